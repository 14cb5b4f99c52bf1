"""ONTAP storage driver variants.

Each variant owns its configuration and client and exposes the narrow
surface the shared components need (``get_config()``, ``get_api()`` and
``name``). Variants only differ where the appliance objects differ:

    ontap-nas            FlexVol per volume, NFS export policy, clones mounted
    ontap-nas-flexgroup  FlexGroup per volume, clones created as async jobs
    ontap-san            FlexVol + LUN per volume, igroup membership and CHAP
    ontap-san-economy    LUNs sharing FlexVols, same access model as ontap-san
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from oslo_log import log as logging

from . import access
from . import admission
from . import api
from . import attributes as sa
from . import configuration
from . import exceptions
from . import models
from . import pools
from . import san
from . import snapshots
from . import utils

LOG = logging.getLogger(__name__)

VERSION = "1.0.0"


class OntapStorageDriver(ABC):
    """Base ONTAP storage driver.

    Version history:
        1.0.0 - Initial implementation
    """

    VERSION = VERSION

    name: str = ""
    use_async_clone = False

    def __init__(self, config: configuration.OntapStorageDriverConfig, client: api.OntapClient):
        self.config = config
        self.client = client
        self.backend_uuid = ""
        self.physical_pools: Dict[str, models.StoragePool] = {}
        self.virtual_pools: Dict[str, models.StoragePool] = {}
        self.initialized = False

    def get_config(self) -> configuration.OntapStorageDriverConfig:
        return self.config

    def get_api(self) -> api.OntapClient:
        return self.client

    def initialize(self, backend_uuid: str = "") -> None:
        """Populate defaults, validate the config and build the pools.

        Raises:
            InvalidConfiguration: If the config or any pool is invalid
            PoolDiscoveryError: If no aggregate can be used
        """
        LOG.info("Initializing %s driver version %s", self.name, self.VERSION)

        self.backend_uuid = backend_uuid
        self.config.storage_driver_name = self.name
        configuration.populate_configuration_defaults(self.config)
        utils.validate_storage_prefix(self.config.storage_prefix)

        self._initialize()

        self.physical_pools, self.virtual_pools = pools.initialize_storage_pools(
            self, self.get_pool_attributes(), self.config.backend_name
        )
        pools.validate_storage_pools(self.physical_pools, self.virtual_pools, self.name)

        self.initialized = True
        LOG.info(
            "Driver %s initialized with %d physical and %d virtual pools.",
            self.config.backend_name,
            len(self.physical_pools),
            len(self.virtual_pools),
        )
        LOG.debug("Driver configuration: %s", configuration.redacted(self.config))

    def _initialize(self) -> None:
        """Variant-specific setup, run before pools are built."""

    def get_pool_attributes(self) -> Dict[str, sa.Offer]:
        return {
            sa.BACKEND_TYPE: sa.StringOffer(self.name),
            sa.SNAPSHOTS: sa.BoolOffer(True),
            sa.CLONES: sa.BoolOffer(True),
            sa.ENCRYPTION: sa.BoolOffer(True),
            sa.PROVISIONING_TYPE: sa.StringOffer("thick", "thin"),
        }

    def get_storage_backend_specs(self, backend: models.StorageBackend) -> None:
        backend.backend_uuid = self.backend_uuid
        pools.get_storage_backend_specs(
            backend, self.physical_pools, self.virtual_pools, self.config.backend_name
        )

    def get_internal_volume_name(self, name: str) -> str:
        return utils.get_internal_volume_name(self.config.storage_prefix, name)

    # Admission

    def get_pools_for_create(self, vol_config, storage_pool, vol_attributes) -> List[models.StoragePool]:
        return pools.get_pools_for_create(
            vol_config, storage_pool, vol_attributes, self.physical_pools, self.virtual_pools
        )

    def get_volume_opts(self, vol_config, requests) -> Dict[str, str]:
        return pools.get_volume_opts(vol_config, requests)

    def check_create_admission(self, vol_config, pool: models.StoragePool, opts: Dict[str, str]) -> int:
        """Run the size and aggregate checks for a new volume on ``pool``.

        Returns:
            The volume size in bytes
        """
        try:
            requested = utils.convert_size_to_bytes(vol_config.size) if vol_config.size else 0
        except ValueError as err:
            raise exceptions.VolumeSizeError(details=str(err)) from err

        size_bytes = admission.get_volume_size(requested, pool.internal_attributes[models.SIZE])
        admission.check_volume_size_limits(size_bytes, self.config)

        space_reserve = opts.get(models.SPACE_RESERVE) or pool.internal_attributes[models.SPACE_RESERVE]
        self._check_aggregate_limits(vol_config, pool, space_reserve, size_bytes)
        return size_bytes

    def _check_aggregate_limits(self, vol_config, pool, space_reserve, size_bytes):
        admission.check_aggregate_limits(pool.name, space_reserve, size_bytes, self.config, self.client)

    def resize_validation(self, name: str, size_bytes: int) -> int:
        return admission.resize_validation(
            name, size_bytes, self.client.volume_exists, self.get_volume_size
        )

    # Clones and snapshots

    def create_clone(self, vol_config, storage_pool: Optional[models.StoragePool] = None) -> None:
        split = snapshots.resolve_split_on_clone(self.config, vol_config, storage_pool)
        snapshots.create_ontap_clone(
            vol_config.internal_name,
            vol_config.clone_source_volume_internal,
            vol_config.clone_source_snapshot,
            split,
            self.config,
            self.client,
            self.use_async_clone,
        )

    def get_volume_size(self, name: str) -> int:
        try:
            volume = self.client.volume_get(name)
        except exceptions.OntapAPIError as err:
            raise exceptions.VolumeError(
                volume_name=name, details="error reading volume size: %s" % err
            ) from err
        if volume.size is None:
            raise exceptions.VolumeError(volume_name=name, details="size not reported")
        return volume.size

    def get_snapshot(self, snap_config) -> Optional[models.Snapshot]:
        return snapshots.get_snapshot(snap_config, self.config, self.client, self.get_volume_size)

    def get_snapshots(self, vol_config) -> List[models.Snapshot]:
        return snapshots.get_snapshots(vol_config, self.config, self.client, self.get_volume_size)

    def create_snapshot(self, snap_config) -> models.Snapshot:
        return snapshots.create_snapshot(snap_config, self.config, self.client, self.get_volume_size)

    def restore_snapshot(self, snap_config) -> None:
        snapshots.restore_snapshot(snap_config, self.config, self.client)

    def delete_snapshot(self, snap_config) -> None:
        snapshots.delete_snapshot(snap_config, self.config, self.client)

    def get_volume(self, name: str) -> None:
        snapshots.get_volume(name, self.client)

    # Access

    @abstractmethod
    def reconcile_node_access(self, nodes: List[models.Node]) -> None:
        """Converge appliance access control onto ``nodes``."""

    @abstractmethod
    def publish(self, vol_config, publish_info: models.VolumePublishInfo) -> None:
        """Grant the nodes in ``publish_info`` access to a volume."""


class OntapNASStorageDriver(OntapStorageDriver):
    name = configuration.ONTAP_NAS

    def _initialize(self):
        utils.validate_cidrs(self.config.auto_export_cidrs)

    def create_clone(self, vol_config, storage_pool=None):
        snapshots.create_clone_nas(self, vol_config, storage_pool, self.use_async_clone)

    def reconcile_node_access(self, nodes):
        policy_name = access.get_export_policy_name(self.backend_uuid)
        access.reconcile_nas_node_access(nodes, self.config, self.client, policy_name)

    def publish(self, vol_config, publish_info):
        publish_info.backend_uuid = publish_info.backend_uuid or self.backend_uuid
        access.publish_flexvol_share(self.client, self.config, publish_info, vol_config.internal_name)


class OntapNASFlexGroupStorageDriver(OntapNASStorageDriver):
    """FlexGroup volumes span aggregates and can only be cloned asynchronously."""

    name = configuration.ONTAP_NAS_FLEXGROUP
    use_async_clone = True

    def get_pool_attributes(self):
        attributes = super(OntapNASFlexGroupStorageDriver, self).get_pool_attributes()
        attributes[sa.CLONES] = sa.BoolOffer(self.client.supports_feature(api.FLEXGROUP_CLONE))
        return attributes


class OntapSANStorageDriver(OntapStorageDriver):
    name = configuration.ONTAP_SAN

    def __init__(self, config, client):
        super(OntapSANStorageDriver, self).__init__(config, client)
        self.ips: List[str] = []

    def _initialize(self):
        try:
            interfaces = self.client.iscsi_interface_list()
        except exceptions.OntapAPIError as err:
            raise exceptions.SANError(details="error listing iSCSI interfaces: %s" % err) from err
        discovered = [i.ip_address for i in interfaces if i.enabled]

        def validate():
            self.ips = san.validate_san_driver(self.config, discovered)

        san.initialize_san_driver(self.client, self.config, validate)

    def get_lun_path(self, vol_config) -> str:
        return "/vol/%s/lun0" % vol_config.internal_name

    def reconcile_node_access(self, nodes):
        iqns = [node.iqn for node in nodes if node.iqn]
        access.reconcile_igroup(self.config.igroup_name, iqns, self.client, self.config)

    def publish(self, vol_config, publish_info):
        node_name, _ = san.get_iscsi_target_info(self.client, self.config)
        san.publish_lun(
            self.client,
            self.config,
            self.ips,
            publish_info,
            self.get_lun_path(vol_config),
            self.config.igroup_name,
            node_name,
        )

    def map_lun(self, vol_config, import_only: bool = False):
        """Map a created or imported LUN to the backend igroup and record its access info."""
        lun_path = self.get_lun_path(vol_config)
        try:
            lun_id = self.client.lun_map_if_not_mapped(self.config.igroup_name, lun_path, import_only)
        except exceptions.OntapAPIError as err:
            raise exceptions.SANError(
                details="error mapping LUN %s to igroup %s: %s" % (lun_path, self.config.igroup_name, err)
            ) from err
        san.populate_ontap_lun_mapping(
            self.client, self.config, self.ips, vol_config, lun_id, lun_path, self.config.igroup_name
        )


class OntapSANEconomyStorageDriver(OntapSANStorageDriver):
    """LUNs packed into shared FlexVols; ``internal_name`` is ``<flexvol>/<lun>``."""

    name = configuration.ONTAP_SAN_ECONOMY

    def get_lun_path(self, vol_config):
        return "/vol/%s" % vol_config.internal_name

    def _check_aggregate_limits(self, vol_config, pool, space_reserve, size_bytes):
        flexvol = vol_config.internal_name.partition("/")[0]
        if self.client.volume_exists(flexvol):
            admission.check_aggregate_limits_for_flexvol(flexvol, size_bytes, self.config, self.client)
        else:
            super(OntapSANEconomyStorageDriver, self)._check_aggregate_limits(
                vol_config, pool, space_reserve, size_bytes
            )


_DRIVERS = {
    configuration.ONTAP_NAS: OntapNASStorageDriver,
    configuration.ONTAP_NAS_FLEXGROUP: OntapNASFlexGroupStorageDriver,
    configuration.ONTAP_SAN: OntapSANStorageDriver,
    configuration.ONTAP_SAN_ECONOMY: OntapSANEconomyStorageDriver,
}


def create_driver(config: configuration.OntapStorageDriverConfig, client: api.OntapClient) -> OntapStorageDriver:
    """Instantiate the variant named by ``config.storage_driver_name``."""
    driver_class = _DRIVERS.get(config.storage_driver_name)
    if driver_class is None:
        raise exceptions.InvalidConfiguration(
            details="unknown storage driver %s" % config.storage_driver_name
        )
    return driver_class(config, client)
