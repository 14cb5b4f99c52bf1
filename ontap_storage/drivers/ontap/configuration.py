"""Configuration options for the ONTAP storage driver."""

from dataclasses import dataclass, field, fields
from typing import Dict, List, Optional

from oslo_config import cfg
from oslo_log import log as logging
from oslo_utils import strutils

from . import exceptions
from . import utils

LOG = logging.getLogger(__name__)

# Configuration group name
CONF_GROUP = "ontap_storage"

# Storage driver names
ONTAP_NAS = "ontap-nas"
ONTAP_NAS_FLEXGROUP = "ontap-nas-flexgroup"
ONTAP_SAN = "ontap-san"
ONTAP_SAN_ECONOMY = "ontap-san-economy"
SAN_DRIVERS = (ONTAP_SAN, ONTAP_SAN_ECONOMY)

# Defaults applied to empty settings
DEFAULT_SPACE_ALLOCATION = "true"
DEFAULT_SPACE_RESERVE = "none"
DEFAULT_SNAPSHOT_POLICY = "none"
DEFAULT_SNAPSHOT_RESERVE = ""
DEFAULT_UNIX_PERMISSIONS = "---rwxrwxrwx"
DEFAULT_SNAPSHOT_DIR = "false"
DEFAULT_EXPORT_POLICY = "default"
DEFAULT_AUTO_EXPORT_POLICY = "<automatic>"
DEFAULT_SECURITY_STYLE = "unix"
DEFAULT_NFS_MOUNT_OPTIONS = ""
DEFAULT_SPLIT_ON_CLONE = "false"
DEFAULT_FILE_SYSTEM_TYPE = "ext4"
DEFAULT_ENCRYPTION = "false"
DEFAULT_LIMIT_AGGREGATE_USAGE = ""
DEFAULT_LIMIT_VOLUME_SIZE = ""
DEFAULT_TIERING_POLICY = ""
DEFAULT_VOLUME_SIZE = "1G"
DEFAULT_STORAGE_PREFIX = "ontap_"
DEFAULT_AUTO_EXPORT_CIDRS = ["0.0.0.0/0", "::/0"]


def _get_ontap_storage_opts():
    """Get ONTAP storage driver configuration options.

    Returns:
        List of oslo_config options
    """
    return [
        # Connection
        cfg.StrOpt(
            "ontap_management_lif",
            default=None,
            help="Management LIF of the SVM or cluster (IP address or hostname)",
        ),
        cfg.StrOpt(
            "ontap_data_lif",
            default=None,
            help="Data LIF used for NFS mounts or iSCSI sessions",
        ),
        cfg.StrOpt("ontap_svm", default=None, help="Storage virtual machine name"),
        cfg.StrOpt("ontap_username", default=None, help="Management API username"),
        cfg.StrOpt(
            "ontap_password",
            default=None,
            secret=True,
            help="Management API password",
        ),
        cfg.StrOpt(
            "ontap_aggregate",
            default=None,
            help=(
                "Restrict provisioning to this aggregate. It must be assigned "
                "to the SVM."
            ),
        ),
        # Driver identity
        cfg.StrOpt(
            "ontap_storage_driver_name",
            default=ONTAP_NAS,
            choices=[ONTAP_NAS, ONTAP_NAS_FLEXGROUP, ONTAP_SAN, ONTAP_SAN_ECONOMY],
            help="Storage driver variant",
        ),
        cfg.StrOpt(
            "ontap_backend_name",
            default=None,
            help="Backend name. Defaults to <driver>_<data LIF>.",
        ),
        cfg.StrOpt(
            "ontap_storage_prefix",
            default=DEFAULT_STORAGE_PREFIX,
            help="Prefix prepended to the internal name of every volume",
        ),
        # Volume defaults
        cfg.StrOpt("ontap_size", default="", help="Default volume size, e.g. 1G"),
        cfg.StrOpt(
            "ontap_space_allocation",
            default="",
            help="Enable LUN space allocation (SAN only)",
        ),
        cfg.StrOpt(
            "ontap_space_reserve",
            default="",
            help="Space reservation mode: 'none' (thin) or 'volume' (thick)",
        ),
        cfg.StrOpt("ontap_snapshot_policy", default="", help="Snapshot policy"),
        cfg.StrOpt(
            "ontap_snapshot_reserve",
            default="",
            help="Percentage of volume reserved for snapshots",
        ),
        cfg.StrOpt("ontap_unix_permissions", default="", help="Unix permissions of new volumes"),
        cfg.StrOpt("ontap_snapshot_dir", default="", help="Show the .snapshot directory"),
        cfg.StrOpt("ontap_export_policy", default="", help="Export policy for new volumes"),
        cfg.StrOpt(
            "ontap_security_style",
            default="",
            help="Security style of new volumes: 'unix' or 'mixed'",
        ),
        cfg.StrOpt("ontap_nfs_mount_options", default="", help="NFS mount options"),
        cfg.StrOpt(
            "ontap_split_on_clone",
            default="",
            help="Split clones from their parent immediately after creation",
        ),
        cfg.StrOpt(
            "ontap_file_system_type",
            default="",
            help="Filesystem type for LUNs: ext3, ext4, xfs or raw (SAN only)",
        ),
        cfg.StrOpt("ontap_encryption", default="", help="Enable volume encryption"),
        cfg.StrOpt("ontap_tiering_policy", default="", help="Tiering policy of new volumes"),
        # Admission limits
        cfg.StrOpt(
            "ontap_limit_aggregate_usage",
            default="",
            help="Refuse provisioning once aggregate usage reaches this percentage, e.g. 80%",
        ),
        cfg.StrOpt(
            "ontap_limit_volume_size",
            default="",
            help="Refuse volumes larger than this size, e.g. 50Gi",
        ),
        # NAS access
        cfg.BoolOpt(
            "ontap_auto_export_policy",
            default=False,
            help="Manage a per-backend export policy from the published nodes' IPs",
        ),
        cfg.ListOpt(
            "ontap_auto_export_cidrs",
            default=[],
            help="CIDRs node IPs must fall into to be exported. Defaults to all addresses.",
        ),
        # SAN access
        cfg.StrOpt(
            "ontap_igroup_name",
            default=None,
            help="Initiator group name. Defaults to ontap-<backend name>.",
        ),
        cfg.BoolOpt(
            "ontap_use_chap",
            default=False,
            help="Require bidirectional CHAP for iSCSI sessions",
        ),
        cfg.StrOpt("ontap_chap_username", default="", help="CHAP initiator username"),
        cfg.StrOpt(
            "ontap_chap_initiator_secret",
            default="",
            secret=True,
            help="CHAP initiator secret",
        ),
        cfg.StrOpt("ontap_chap_target_username", default="", help="CHAP target username"),
        cfg.StrOpt(
            "ontap_chap_target_initiator_secret",
            default="",
            secret=True,
            help="CHAP target secret",
        ),
        # Topology and virtual pools
        cfg.StrOpt("ontap_region", default="", help="Region offered by every pool"),
        cfg.StrOpt("ontap_zone", default="", help="Zone offered by every pool"),
        cfg.DictOpt("ontap_labels", default={}, help="Labels offered by every pool"),
        cfg.MultiStrOpt(
            "ontap_virtual_pools",
            default=[],
            help=(
                "Virtual pool definition. Format: 'key=value;key=value', where "
                "keys are volume defaults in camel case (spaceReserve, "
                "snapshotPolicy, encryption, ...) plus region, zone and "
                "labels. Labels are written as 'labels=k1:v1,k2:v2'. "
                "Example: "
                "  ontap_virtual_pools = zone=z1;spaceReserve=volume;labels=tier:gold"
            ),
        ),
        # Locking
        cfg.BoolOpt(
            "ontap_storage_external_locks",
            default=False,
            help=(
                "Use inter-process file locks when reconciling export policies "
                "and initiator groups. Requires [oslo_concurrency] lock_path."
            ),
        ),
    ]


def register_opts(conf, group=None):
    """Register ONTAP storage configuration options.

    Args:
        conf: oslo_config.cfg.ConfigOpts instance
        group: Configuration group name (default: CONF_GROUP)
    """
    if group is None:
        group = CONF_GROUP
    conf.register_opts(_get_ontap_storage_opts(), group=group)


def list_opts():
    """Return a list of ONTAP storage options for oslo-config-generator.

    Returns:
        List of (group_name, options) tuples
    """
    return [
        (CONF_GROUP, _get_ontap_storage_opts()),
    ]


def get_ontap_storage_opts():
    """Get ONTAP storage configuration options (public API)."""
    return _get_ontap_storage_opts()


@dataclass
class VirtualPool:
    """Overrides of backend defaults for one virtual pool."""

    labels: Dict[str, str] = field(default_factory=dict)
    region: str = ""
    zone: str = ""
    size: str = ""
    space_allocation: str = ""
    space_reserve: str = ""
    snapshot_policy: str = ""
    snapshot_reserve: str = ""
    unix_permissions: str = ""
    snapshot_dir: str = ""
    export_policy: str = ""
    security_style: str = ""
    split_on_clone: str = ""
    file_system_type: str = ""
    encryption: str = ""
    tiering_policy: str = ""


# Virtual pool definition key -> VirtualPool field
_VIRTUAL_POOL_KEYS = {
    "region": "region",
    "zone": "zone",
    "size": "size",
    "spaceAllocation": "space_allocation",
    "spaceReserve": "space_reserve",
    "snapshotPolicy": "snapshot_policy",
    "snapshotReserve": "snapshot_reserve",
    "unixPermissions": "unix_permissions",
    "snapshotDir": "snapshot_dir",
    "exportPolicy": "export_policy",
    "securityStyle": "security_style",
    "splitOnClone": "split_on_clone",
    "fileSystemType": "file_system_type",
    "encryption": "encryption",
    "tieringPolicy": "tiering_policy",
}


def parse_virtual_pool(definition: str) -> VirtualPool:
    """Parse one ``key=value;key=value`` virtual pool definition.

    Raises:
        InvalidConfiguration: On unknown keys or malformed terms
    """
    pool = VirtualPool()
    for term in definition.split(";"):
        term = term.strip()
        if not term:
            continue
        key, sep, value = term.partition("=")
        key = key.strip()
        value = value.strip()
        if not sep or not key:
            raise exceptions.InvalidConfiguration(
                details="malformed virtual pool term '%s'" % term
            )
        if key == "labels":
            for pair in value.split(","):
                label, label_sep, label_value = pair.partition(":")
                if not label_sep or not label.strip():
                    raise exceptions.InvalidConfiguration(
                        details="malformed virtual pool label '%s'" % pair
                    )
                pool.labels[label.strip()] = label_value.strip()
        elif key in _VIRTUAL_POOL_KEYS:
            setattr(pool, _VIRTUAL_POOL_KEYS[key], value)
        else:
            raise exceptions.InvalidConfiguration(
                details="unknown virtual pool attribute '%s'" % key
            )
    return pool


@dataclass
class OntapStorageDriverConfig:
    """Configuration owned by one driver instance and passed to every component."""

    storage_driver_name: str = ONTAP_NAS
    backend_name: str = ""
    management_lif: str = ""
    data_lif: str = ""
    svm: str = ""
    username: str = ""
    password: str = ""
    aggregate: str = ""
    storage_prefix: Optional[str] = None

    size: str = ""
    space_allocation: str = ""
    space_reserve: str = ""
    snapshot_policy: str = ""
    snapshot_reserve: str = ""
    unix_permissions: str = ""
    snapshot_dir: str = ""
    export_policy: str = ""
    security_style: str = ""
    nfs_mount_options: str = ""
    split_on_clone: str = ""
    file_system_type: str = ""
    encryption: str = ""
    tiering_policy: str = ""
    limit_aggregate_usage: str = ""
    limit_volume_size: str = ""

    auto_export_policy: bool = False
    auto_export_cidrs: List[str] = field(default_factory=list)

    igroup_name: str = ""
    use_chap: bool = False
    chap_username: str = ""
    chap_initiator_secret: str = ""
    chap_target_username: str = ""
    chap_target_initiator_secret: str = ""

    region: str = ""
    zone: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    virtual_pools: List[VirtualPool] = field(default_factory=list)

    external_locks: bool = False

    @classmethod
    def from_conf(cls, conf):
        """Build the config from registered options.

        Args:
            conf: Option namespace exposing the ``ontap_*`` attributes, e.g.
                ``CONF.ontap_storage`` or a driver configuration object
        """
        return cls(
            storage_driver_name=conf.ontap_storage_driver_name,
            backend_name=conf.ontap_backend_name or "",
            management_lif=conf.ontap_management_lif or "",
            data_lif=conf.ontap_data_lif or "",
            svm=conf.ontap_svm or "",
            username=conf.ontap_username or "",
            password=conf.ontap_password or "",
            aggregate=conf.ontap_aggregate or "",
            storage_prefix=conf.ontap_storage_prefix,
            size=conf.ontap_size,
            space_allocation=conf.ontap_space_allocation,
            space_reserve=conf.ontap_space_reserve,
            snapshot_policy=conf.ontap_snapshot_policy,
            snapshot_reserve=conf.ontap_snapshot_reserve,
            unix_permissions=conf.ontap_unix_permissions,
            snapshot_dir=conf.ontap_snapshot_dir,
            export_policy=conf.ontap_export_policy,
            security_style=conf.ontap_security_style,
            nfs_mount_options=conf.ontap_nfs_mount_options,
            split_on_clone=conf.ontap_split_on_clone,
            file_system_type=conf.ontap_file_system_type,
            encryption=conf.ontap_encryption,
            tiering_policy=conf.ontap_tiering_policy,
            limit_aggregate_usage=conf.ontap_limit_aggregate_usage,
            limit_volume_size=conf.ontap_limit_volume_size,
            auto_export_policy=conf.ontap_auto_export_policy,
            auto_export_cidrs=list(conf.ontap_auto_export_cidrs or []),
            igroup_name=conf.ontap_igroup_name or "",
            use_chap=conf.ontap_use_chap,
            chap_username=conf.ontap_chap_username,
            chap_initiator_secret=conf.ontap_chap_initiator_secret,
            chap_target_username=conf.ontap_chap_target_username,
            chap_target_initiator_secret=conf.ontap_chap_target_initiator_secret,
            region=conf.ontap_region,
            zone=conf.ontap_zone,
            labels=dict(conf.ontap_labels or {}),
            virtual_pools=[parse_virtual_pool(d) for d in conf.ontap_virtual_pools or []],
            external_locks=conf.ontap_storage_external_locks,
        )

    def is_san(self) -> bool:
        return self.storage_driver_name in SAN_DRIVERS


def populate_configuration_defaults(config: OntapStorageDriverConfig) -> None:
    """Fill every unset setting of ``config`` in place.

    Raises:
        InvalidConfiguration: If the default size or splitOnClone is invalid
    """
    if config.storage_prefix is None:
        config.storage_prefix = DEFAULT_STORAGE_PREFIX

    if not config.backend_name:
        config.backend_name = utils.clean_backend_name(
            "%s_%s" % (config.storage_driver_name, config.data_lif)
        )

    if not config.size:
        config.size = DEFAULT_VOLUME_SIZE
    try:
        utils.convert_size_to_bytes(config.size)
    except ValueError as err:
        raise exceptions.InvalidConfiguration(
            details="invalid config value for default volume size: %s" % err
        ) from err

    if not config.space_allocation:
        config.space_allocation = DEFAULT_SPACE_ALLOCATION
    if not config.space_reserve:
        config.space_reserve = DEFAULT_SPACE_RESERVE
    if not config.snapshot_policy:
        config.snapshot_policy = DEFAULT_SNAPSHOT_POLICY
    if not config.snapshot_reserve:
        config.snapshot_reserve = DEFAULT_SNAPSHOT_RESERVE
    if not config.unix_permissions:
        config.unix_permissions = DEFAULT_UNIX_PERMISSIONS
    if not config.snapshot_dir:
        config.snapshot_dir = DEFAULT_SNAPSHOT_DIR
    if config.auto_export_policy:
        config.export_policy = DEFAULT_AUTO_EXPORT_POLICY
    elif not config.export_policy:
        config.export_policy = DEFAULT_EXPORT_POLICY
    if not config.security_style:
        config.security_style = DEFAULT_SECURITY_STYLE
    if not config.nfs_mount_options:
        config.nfs_mount_options = DEFAULT_NFS_MOUNT_OPTIONS

    if not config.split_on_clone:
        config.split_on_clone = DEFAULT_SPLIT_ON_CLONE
    else:
        try:
            strutils.bool_from_string(config.split_on_clone, strict=True)
        except ValueError as err:
            raise exceptions.InvalidConfiguration(
                details="invalid boolean value for splitOnClone: %s" % config.split_on_clone
            ) from err

    if not config.file_system_type:
        config.file_system_type = DEFAULT_FILE_SYSTEM_TYPE
    if not config.encryption:
        config.encryption = DEFAULT_ENCRYPTION
    if not config.limit_aggregate_usage:
        config.limit_aggregate_usage = DEFAULT_LIMIT_AGGREGATE_USAGE
    if not config.limit_volume_size:
        config.limit_volume_size = DEFAULT_LIMIT_VOLUME_SIZE
    if not config.tiering_policy:
        config.tiering_policy = DEFAULT_TIERING_POLICY
    if not config.auto_export_cidrs:
        config.auto_export_cidrs = list(DEFAULT_AUTO_EXPORT_CIDRS)

    if config.is_san() and not config.igroup_name:
        config.igroup_name = "ontap-%s" % config.backend_name

    LOG.debug(
        "Configuration defaults: size=%s spaceReserve=%s snapshotPolicy=%s "
        "exportPolicy=%s securityStyle=%s splitOnClone=%s encryption=%s",
        config.size,
        config.space_reserve,
        config.snapshot_policy,
        config.export_policy,
        config.security_style,
        config.split_on_clone,
        config.encryption,
    )


def redacted(config: OntapStorageDriverConfig) -> Dict[str, object]:
    """Return the config as a dict safe for logging."""
    secret_fields = {
        "password",
        "chap_initiator_secret",
        "chap_target_initiator_secret",
    }
    result = {}
    for f in fields(config):
        value = getattr(config, f.name)
        if f.name in secret_fields and value:
            value = "<REDACTED>"
        result[f.name] = value
    return result
