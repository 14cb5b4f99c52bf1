"""Storage pool discovery, validation and candidate selection.

Physical pools are the aggregates assigned to the backend's SVM. Virtual
pools are configured overlays of the backend defaults; a request made
against a virtual pool is placed on any physical pool whose capabilities
match it.
"""

import random
from typing import Dict, List, Optional, Tuple

from oslo_log import log as logging
from oslo_utils import strutils

from . import admission
from . import attributes as sa
from . import configuration
from . import exceptions
from . import models
from . import utils
from .exceptions import ErrorCode

LOG = logging.getLogger(__name__)

# Aggregate type -> capability offers
PERFORMANCE_CLASSES = {
    "hdd": {sa.MEDIA: sa.StringOffer(sa.HDD)},
    "hybrid": {sa.MEDIA: sa.StringOffer(sa.HYBRID)},
    "ssd": {sa.MEDIA: sa.StringOffer(sa.SSD)},
}

SUPPORTED_FILESYSTEMS = ("ext3", "ext4", "xfs", "raw")
SPACE_RESERVE_MODES = ("none", "volume")
SECURITY_STYLES = ("unix", "mixed")
TIERING_POLICIES = ("snapshot-only", "auto", "none", "backup", "all", "")

PoolMap = Dict[str, models.StoragePool]


def discover_backend_aggr_names(driver) -> List[str]:
    """Return the aggregates this backend may provision on.

    Raises:
        PoolDiscoveryError: If the SVM has no aggregates, or the configured
            aggregate is not among them
    """
    config = driver.get_config()
    client = driver.get_api()

    try:
        svm_aggregates = client.vserver_get_aggregate_names()
    except exceptions.OntapAPIError as err:
        raise exceptions.PoolDiscoveryError(details=str(err)) from err

    if not svm_aggregates:
        raise exceptions.PoolDiscoveryError(
            details="SVM %s has no assigned aggregates" % config.svm
        )
    LOG.debug("Read storage pools assigned to SVM %s: %s", config.svm, svm_aggregates)

    if not config.aggregate:
        return list(svm_aggregates)

    aggr_names = [name for name in svm_aggregates if name == config.aggregate]
    if not aggr_names:
        raise exceptions.PoolDiscoveryError(
            details=(
                "the assigned aggregates for SVM %s do not include the "
                "configured aggregate %s" % (config.svm, config.aggregate)
            )
        )
    LOG.debug("Provisioning will be restricted to aggregate %s.", config.aggregate)
    return aggr_names


def get_vserver_aggr_attributes(driver, pool_attribute_map: Dict[str, Dict[str, sa.Offer]]) -> None:
    """Add media offers derived from the aggregate type, in place.

    Aggregates of unknown type are left without a media offer.

    Raises:
        OntapAPIError: If the aggregate listing fails
    """
    for aggr in driver.get_api().vserver_show_aggr_get():
        attrs = pool_attribute_map.get(aggr.aggregate_name)
        if attrs is None:
            continue

        offers = PERFORMANCE_CLASSES.get(aggr.aggregate_type)
        if offers is None:
            LOG.debug(
                "Aggregate %s has unknown performance characteristics (type %s).",
                aggr.aggregate_name,
                aggr.aggregate_type,
            )
            continue

        LOG.debug("Read aggregate %s attributes, type %s.", aggr.aggregate_name, aggr.aggregate_type)
        attrs.update(offers)


def _default_internal_attributes(values, is_san: bool) -> Dict[str, str]:
    internal = {
        models.SIZE: values["size"],
        models.REGION: values["region"],
        models.ZONE: values["zone"],
        models.SPACE_RESERVE: values["space_reserve"],
        models.SNAPSHOT_POLICY: values["snapshot_policy"],
        models.SNAPSHOT_RESERVE: values["snapshot_reserve"],
        models.SPLIT_ON_CLONE: values["split_on_clone"],
        models.ENCRYPTION: values["encryption"],
        models.UNIX_PERMISSIONS: values["unix_permissions"],
        models.SNAPSHOT_DIR: values["snapshot_dir"],
        models.EXPORT_POLICY: values["export_policy"],
        models.SECURITY_STYLE: values["security_style"],
        models.TIERING_POLICY: values["tiering_policy"],
    }
    if is_san:
        internal[models.SPACE_ALLOCATION] = values["space_allocation"]
        internal[models.FILE_SYSTEM_TYPE] = values["file_system_type"]
    return internal


_OVERRIDABLE = (
    "region",
    "zone",
    "size",
    "space_allocation",
    "space_reserve",
    "snapshot_policy",
    "snapshot_reserve",
    "split_on_clone",
    "unix_permissions",
    "snapshot_dir",
    "export_policy",
    "security_style",
    "file_system_type",
    "encryption",
    "tiering_policy",
)


def initialize_storage_pools(driver, pool_attributes: Dict[str, sa.Offer], backend_name: str) -> Tuple[PoolMap, PoolMap]:
    """Build the physical and virtual pools of a backend.

    Args:
        driver: Driver exposing get_config(), get_api() and name
        pool_attributes: Offers every pool of this driver makes
        backend_name: Backend name used to name virtual pools

    Returns:
        (physical pools, virtual pools), each keyed by pool name

    Raises:
        PoolDiscoveryError: If no aggregate can be used
        InvalidConfiguration: If a virtual pool's encryption is not a boolean
    """
    config = driver.get_config()
    is_san = driver.name in configuration.SAN_DRIVERS

    physical_pools: PoolMap = {}
    virtual_pools: PoolMap = {}
    media_offers: List[sa.StringOffer] = []

    aggr_names = discover_backend_aggr_names(driver)
    aggr_attributes: Dict[str, Dict[str, sa.Offer]] = {name: {} for name in aggr_names}

    try:
        get_vserver_aggr_attributes(driver, aggr_attributes)
    except exceptions.OntapAPIError as err:
        if err.is_code(ErrorCode.INSUFFICIENT_PRIVILEGE):
            LOG.warning(
                "User has insufficient privileges to obtain aggregate info. "
                "Storage classes with physical attributes such as 'media' "
                "will not match pools on backend %s.",
                backend_name,
            )
        else:
            LOG.error(
                "Could not obtain aggregate info; storage classes with physical "
                "attributes such as 'media' will not match pools on backend %s: %s",
                backend_name,
                err,
            )

    backend_values = {name: getattr(config, name) for name in _OVERRIDABLE}

    for aggr_name in aggr_names:
        pool = models.StoragePool(name=aggr_name)
        pool.attributes.update(pool_attributes)

        for attr_name, offer in aggr_attributes[aggr_name].items():
            pool.attributes[attr_name] = offer
            pool.internal_attributes[attr_name] = offer.to_string()
            if attr_name == sa.MEDIA:
                media_offers.append(offer)

        if config.region:
            pool.attributes[sa.REGION] = sa.StringOffer(config.region)
        if config.zone:
            pool.attributes[sa.ZONE] = sa.StringOffer(config.zone)
        pool.attributes[sa.LABELS] = sa.LabelOffer(config.labels)

        pool.internal_attributes.update(_default_internal_attributes(backend_values, is_san))
        physical_pools[pool.name] = pool

    for index, vpool in enumerate(config.virtual_pools):
        values = {
            name: getattr(vpool, name) or backend_values[name] for name in _OVERRIDABLE
        }

        pool = models.StoragePool(name=utils.pool_name("pool_%d" % index, backend_name))
        pool.attributes.update(pool_attributes)
        pool.attributes[sa.LABELS] = sa.LabelOffer(config.labels, vpool.labels)
        if values["region"]:
            pool.attributes[sa.REGION] = sa.StringOffer(values["region"])
        if values["zone"]:
            pool.attributes[sa.ZONE] = sa.StringOffer(values["zone"])
        if media_offers:
            media = sa.StringOffer.from_offers(*media_offers)
            pool.attributes[sa.MEDIA] = media
            pool.internal_attributes[models.MEDIA] = media.to_string()
        if values["encryption"]:
            try:
                encryption = strutils.bool_from_string(values["encryption"], strict=True)
            except ValueError as err:
                raise exceptions.InvalidConfiguration(
                    details="invalid boolean value for encryption: %s in virtual pool %s"
                    % (values["encryption"], pool.name)
                ) from err
            pool.attributes[sa.ENCRYPTION] = sa.BoolOffer(encryption)

        pool.internal_attributes.update(_default_internal_attributes(values, is_san))
        virtual_pools[pool.name] = pool

    return physical_pools, virtual_pools


def _check_bool(pool, key: str, label: str) -> None:
    value = pool.internal_attributes.get(key, "")
    if not value:
        raise exceptions.InvalidConfiguration(
            details="%s cannot be empty in pool %s" % (label, pool.name)
        )
    try:
        strutils.bool_from_string(value, strict=True)
    except ValueError as err:
        raise exceptions.InvalidConfiguration(
            details="invalid value for %s in pool %s: %s" % (label, pool.name, value)
        ) from err


def validate_storage_pools(physical_pools: PoolMap, virtual_pools: PoolMap, driver_name: str) -> None:
    """Check every pool's internal attributes; the first violation fails.

    Raises:
        InvalidConfiguration: On the first invalid attribute
    """
    for pool in list(physical_pools.values()) + list(virtual_pools.values()):
        internal = pool.internal_attributes

        space_reserve = internal.get(models.SPACE_RESERVE, "")
        if space_reserve not in SPACE_RESERVE_MODES:
            raise exceptions.InvalidConfiguration(
                details="invalid spaceReserve %s in pool %s" % (space_reserve, pool.name)
            )

        if not internal.get(models.SNAPSHOT_POLICY):
            raise exceptions.InvalidConfiguration(
                details="snapshot policy cannot be empty in pool %s" % pool.name
            )

        _check_bool(pool, models.ENCRYPTION, "encryption")
        _check_bool(pool, models.SNAPSHOT_DIR, "snapshotDir")

        security_style = internal.get(models.SECURITY_STYLE, "")
        if security_style not in SECURITY_STYLES:
            raise exceptions.InvalidConfiguration(
                details="invalid securityStyle %s in pool %s" % (security_style, pool.name)
            )

        if not internal.get(models.EXPORT_POLICY):
            raise exceptions.InvalidConfiguration(
                details="export policy cannot be empty in pool %s" % pool.name
            )

        if not internal.get(models.UNIX_PERMISSIONS):
            raise exceptions.InvalidConfiguration(
                details="UNIX permissions cannot be empty in pool %s" % pool.name
            )

        tiering_policy = internal.get(models.TIERING_POLICY, "")
        if tiering_policy not in TIERING_POLICIES:
            raise exceptions.InvalidConfiguration(
                details="invalid tieringPolicy %s in pool %s" % (tiering_policy, pool.name)
            )

        media = internal.get(models.MEDIA, "")
        if media:
            for media_type in media.split(","):
                if media_type not in sa.MEDIA_TYPES:
                    LOG.error("Invalid media type in pool %s: %s", pool.name, media_type)

        default_size = internal.get(models.SIZE, "")
        try:
            size_bytes = utils.convert_size_to_bytes(default_size)
        except ValueError as err:
            raise exceptions.InvalidConfiguration(
                details="invalid value for default volume size in pool %s: %s" % (pool.name, err)
            ) from err
        if size_bytes < admission.MINIMUM_VOLUME_SIZE_BYTES:
            raise exceptions.InvalidConfiguration(
                details=(
                    "invalid value for size in pool %s. Requested volume size "
                    "(%d bytes) is too small; the minimum volume size is %d bytes"
                    % (pool.name, size_bytes, admission.MINIMUM_VOLUME_SIZE_BYTES)
                )
            )

        # FlexGroups cannot be cloned
        if driver_name != configuration.ONTAP_NAS_FLEXGROUP:
            _check_bool(pool, models.SPLIT_ON_CLONE, "splitOnClone")

        if driver_name in configuration.SAN_DRIVERS:
            _check_bool(pool, models.SPACE_ALLOCATION, "spaceAllocation")
            fs_type = internal.get(models.FILE_SYSTEM_TYPE, "")
            if not fs_type:
                raise exceptions.InvalidConfiguration(
                    details="fileSystemType cannot be empty in pool %s" % pool.name
                )
            if fs_type not in SUPPORTED_FILESYSTEMS:
                raise exceptions.InvalidConfiguration(
                    details="invalid fileSystemType %s in pool %s" % (fs_type, pool.name)
                )


def get_pools_for_create(
    vol_config,
    storage_pool: Optional[models.StoragePool],
    vol_attributes: Dict[str, sa.Request],
    physical_pools: PoolMap,
    virtual_pools: PoolMap,
) -> List[models.StoragePool]:
    """Return the physical pools a volume may be placed on, shuffled.

    A physical pool hint is returned as is. For a virtual pool hint (or no
    hint) every physical pool matching the request's attributes is a
    candidate; the selector only chooses among virtual pools and is ignored.

    Raises:
        StoragePoolNotFound: If the hint names an unknown pool
        BackendIneligible: If no physical pool matches
    """
    if storage_pool is not None:
        if storage_pool.name in physical_pools:
            return [storage_pool]
        if storage_pool.name not in virtual_pools:
            raise exceptions.StoragePoolNotFound(pool_name=storage_pool.name)

    requests = {name: req for name, req in vol_attributes.items() if name != sa.SELECTOR}
    storage_class = sa.StorageClass.from_attributes(requests)

    candidates = [pool for pool in physical_pools.values() if storage_class.matches(pool)]
    if not candidates:
        raise exceptions.BackendIneligible(
            volume_name=vol_config.internal_name,
            details="backend has no physical pools that can satisfy request",
        )

    random.shuffle(candidates)
    return candidates


def get_volume_opts(vol_config, requests: Dict[str, sa.Request]) -> Dict[str, str]:
    """Translate request attributes and per-volume overrides into options."""
    opts = {}

    provisioning = requests.get(sa.PROVISIONING_TYPE)
    if provisioning is not None:
        if provisioning.value == "thin":
            opts[models.SPACE_RESERVE] = "none"
        elif provisioning.value == "thick":
            opts[models.SPACE_RESERVE] = "volume"
        else:
            LOG.warning("Expected 'thick' or 'thin' for %s; ignoring.", sa.PROVISIONING_TYPE)

    encryption = requests.get(sa.ENCRYPTION)
    if encryption is not None:
        if isinstance(encryption.value, bool):
            if encryption.value:
                opts[models.ENCRYPTION] = "true"
        else:
            LOG.warning("Expected bool for %s; ignoring.", sa.ENCRYPTION)

    overrides = (
        (models.SNAPSHOT_RESERVE, vol_config.snapshot_reserve),
        (models.SNAPSHOT_POLICY, vol_config.snapshot_policy),
        (models.UNIX_PERMISSIONS, vol_config.unix_permissions),
        (models.SNAPSHOT_DIR, vol_config.snapshot_dir),
        (models.EXPORT_POLICY, vol_config.export_policy),
        (models.SPACE_RESERVE, vol_config.space_reserve),
        (models.SECURITY_STYLE, vol_config.security_style),
        (models.SPLIT_ON_CLONE, vol_config.split_on_clone),
        (models.FILE_SYSTEM_TYPE, vol_config.file_system),
        (models.ENCRYPTION, vol_config.encryption),
        (models.TIERING_POLICY, vol_config.tiering_policy),
    )
    for key, value in overrides:
        if value:
            opts[key] = value
    return opts


def get_storage_backend_specs(backend: models.StorageBackend, physical_pools: PoolMap, virtual_pools: PoolMap, backend_name: str) -> None:
    """Attach pools to the backend.

    Virtual pools are exposed when any exist, physical pools otherwise; both
    get their back-reference set.
    """
    backend.name = backend_name
    expose_virtual = bool(virtual_pools)

    for pool in physical_pools.values():
        if expose_virtual:
            pool.backend = backend
        else:
            backend.add_storage_pool(pool)

    for pool in virtual_pools.values():
        backend.add_storage_pool(pool)
