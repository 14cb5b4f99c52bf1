"""Driver-side records passed between the orchestrator and the driver."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Internal attribute keys: concrete values applied at provisioning time
SIZE = "size"
REGION = "region"
ZONE = "zone"
MEDIA = "media"
SPACE_ALLOCATION = "spaceAllocation"
SNAPSHOT_DIR = "snapshotDir"
SPACE_RESERVE = "spaceReserve"
SNAPSHOT_POLICY = "snapshotPolicy"
SNAPSHOT_RESERVE = "snapshotReserve"
UNIX_PERMISSIONS = "unixPermissions"
EXPORT_POLICY = "exportPolicy"
SECURITY_STYLE = "securityStyle"
ENCRYPTION = "encryption"
FILE_SYSTEM_TYPE = "fileSystemType"
SPLIT_ON_CLONE = "splitOnClone"
TIERING_POLICY = "tieringPolicy"


@dataclass
class StoragePool:
    """A physical (aggregate) or virtual pool offered by one backend.

    Attributes:
        name: Aggregate name for physical pools, ``<backend>_pool_<N>`` for
            virtual ones
        attributes: Capability name -> offer, used for request matching
        internal_attributes: Internal attribute key -> value applied when a
            volume is provisioned from this pool
        backend: Owning backend, set once pools are attached
    """

    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    internal_attributes: Dict[str, str] = field(default_factory=dict)
    backend: Optional["StorageBackend"] = None


@dataclass
class StorageBackend:
    name: str
    backend_uuid: str = ""
    storage: Dict[str, StoragePool] = field(default_factory=dict)

    def add_storage_pool(self, pool: StoragePool) -> None:
        pool.backend = self
        self.storage[pool.name] = pool


@dataclass
class VolumeAccessInfo:
    """Where a provisioned SAN volume can be reached, recorded at create time."""

    iscsi_target_portal: str = ""
    iscsi_portals: List[str] = field(default_factory=list)
    iscsi_target_iqn: str = ""
    iscsi_lun_number: int = 0
    iscsi_igroup: str = ""


@dataclass
class VolumeConfig:
    """A volume or clone request.

    Empty override fields mean "use the pool or backend value".
    """

    name: str
    internal_name: str = ""
    size: str = ""
    clone_source_volume: str = ""
    clone_source_volume_internal: str = ""
    clone_source_snapshot: str = ""
    split_on_clone: str = ""
    snapshot_policy: str = ""
    snapshot_reserve: str = ""
    unix_permissions: str = ""
    snapshot_dir: str = ""
    export_policy: str = ""
    space_reserve: str = ""
    security_style: str = ""
    file_system: str = ""
    encryption: str = ""
    tiering_policy: str = ""
    access_info: VolumeAccessInfo = field(default_factory=VolumeAccessInfo)


@dataclass
class SnapshotConfig:
    name: str
    internal_name: str
    volume_name: str
    volume_internal_name: str


@dataclass
class Snapshot:
    config: SnapshotConfig
    created: str
    size_bytes: int


@dataclass
class Node:
    name: str
    iqn: str = ""
    ips: List[str] = field(default_factory=list)


@dataclass
class ChapCredentials:
    """Bidirectional CHAP credentials; all four fields are required."""

    chap_username: str = ""
    chap_initiator_secret: str = ""
    chap_target_username: str = ""
    chap_target_initiator_secret: str = ""

    def missing_fields(self) -> List[str]:
        missing = []
        if not self.chap_username:
            missing.append("ChapUsername")
        if not self.chap_initiator_secret:
            missing.append("ChapInitiatorSecret")
        if not self.chap_target_username:
            missing.append("ChapTargetUsername")
        if not self.chap_target_initiator_secret:
            missing.append("ChapTargetInitiatorSecret")
        return missing


@dataclass
class VolumePublishInfo:
    """Publish request from the orchestrator, completed by the driver.

    The iSCSI fields are filled in by :func:`~.san.publish_lun`.
    """

    backend_uuid: str = ""
    nodes: List[Node] = field(default_factory=list)
    host_iqn: List[str] = field(default_factory=list)
    host_name: str = ""
    unmanaged: bool = False

    iscsi_lun_number: int = 0
    iscsi_target_portal: str = ""
    iscsi_portals: List[str] = field(default_factory=list)
    iscsi_target_iqn: str = ""
    iscsi_igroup: str = ""
    filesystem_type: str = ""
    shared_target: bool = True
    use_chap: bool = False
    chap_credentials: Optional[ChapCredentials] = None
