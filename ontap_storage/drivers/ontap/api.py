"""Remote management client interface for ONTAP appliances.

The transport (ZAPI/REST marshalling, authentication) lives outside this
package. Everything here talks to the appliance through :class:`OntapClient`,
whose implementations perform a single synchronous object-level operation
per call and raise :class:`~.exceptions.OntapAPIError` carrying a stable
:class:`~.exceptions.ErrorCode` on failure.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

# Features a client may or may not support depending on the appliance version
FLEXGROUP_CLONE = "flexgroup_clone"

# Async job states
JOB_STATE_SUCCESS = "success"
JOB_STATE_FAILURE = "failure"
JOB_STATE_RUNNING = "running"
JOB_STATE_QUEUED = "queued"


@dataclass
class ExportRule:
    """A client-match rule in an export policy.

    Attributes:
        client_match: Comma-joined IP/CIDR list
        rule_index: Appliance-assigned index, only used for deletion
    """

    client_match: str
    rule_index: int


@dataclass
class InitiatorGroup:
    name: str
    initiators: List[str] = field(default_factory=list)


@dataclass
class DefaultAuth:
    """Authentication record of the SVM's default iSCSI initiator."""

    auth_type: Optional[str]
    user_name: Optional[str] = None
    outbound_user_name: Optional[str] = None


@dataclass
class SnapshotInfo:
    name: str
    access_time: int


@dataclass
class VolumeAttributes:
    name: str
    aggregate: Optional[str] = None
    space_reserve: Optional[str] = None
    size: Optional[int] = None


@dataclass
class AggregateSpace:
    aggregate: str
    aggregate_size: int
    used_including_snapshot_reserve: int
    volume_footprints: int = 0
    volume_footprints_percent: int = 0
    used_including_snapshot_reserve_percent: int = 0


@dataclass
class AggregateAttributes:
    aggregate_name: str
    aggregate_type: str


@dataclass
class IscsiInterface:
    ip_address: str
    ip_port: int = 3260
    enabled: bool = True


@dataclass
class LunMapInfo:
    lun_path: str
    igroup_name: str
    lun_id: int
    reporting_nodes: List[str] = field(default_factory=list)


@dataclass
class JobStatus:
    job_id: str
    state: str
    message: str = ""


class OntapClient(ABC):
    """Abstract remote management client scoped to a single SVM.

    Implementations are shared across concurrent logical operations of one
    backend and must not hold per-call state.
    """

    svm: str = ""

    @abstractmethod
    def supports_feature(self, feature: str) -> bool:
        pass

    # Export policies

    @abstractmethod
    def export_policy_create(self, policy_name: str) -> None:
        """Raises OntapAPIError(ALREADY_EXISTS) if present."""

    @abstractmethod
    def export_policy_destroy(self, policy_name: str) -> None:
        pass

    @abstractmethod
    def export_policy_get(self, policy_name: str) -> str:
        """Raises OntapAPIError(NOT_FOUND) if absent."""

    @abstractmethod
    def export_rule_list(self, policy_name: str) -> List[ExportRule]:
        pass

    @abstractmethod
    def export_rule_create(
        self,
        policy_name: str,
        client_match: str,
        protocols: List[str],
        ro_rules: List[str],
        rw_rules: List[str],
        superuser_rules: List[str],
    ) -> None:
        pass

    @abstractmethod
    def export_rule_destroy(self, policy_name: str, rule_index: int) -> None:
        pass

    # Initiator groups

    @abstractmethod
    def igroup_create(self, igroup_name: str, igroup_type: str, os_type: str) -> None:
        """Raises OntapAPIError(ALREADY_EXISTS) if present."""

    @abstractmethod
    def igroup_get(self, igroup_name: str) -> InitiatorGroup:
        pass

    @abstractmethod
    def igroup_add(self, igroup_name: str, initiator: str) -> None:
        """Raises OntapAPIError(INITIATOR_ALREADY_PRESENT) if already a member."""

    @abstractmethod
    def igroup_remove(self, igroup_name: str, initiator: str, force: bool) -> None:
        """Raises OntapAPIError(INITIATOR_NOT_PRESENT) if not a member."""

    # CHAP

    @abstractmethod
    def iscsi_initiator_get_default_auth(self) -> DefaultAuth:
        pass

    @abstractmethod
    def iscsi_initiator_set_default_auth(
        self,
        auth_type: str,
        user_name: str,
        passphrase: str,
        outbound_user_name: str,
        outbound_passphrase: str,
    ) -> None:
        pass

    # Snapshots

    @abstractmethod
    def snapshot_create(self, snapshot_name: str, volume_name: str) -> None:
        pass

    @abstractmethod
    def snapshot_list(self, volume_name: str) -> List[SnapshotInfo]:
        pass

    @abstractmethod
    def snapshot_delete(self, snapshot_name: str, volume_name: str) -> None:
        """Raises OntapAPIError(SNAPSHOT_BUSY) if clones depend on it."""

    @abstractmethod
    def snapshot_restore_volume(self, snapshot_name: str, volume_name: str) -> None:
        pass

    # Clones

    @abstractmethod
    def volume_clone_create(self, name: str, source: str, snapshot: str) -> None:
        """Raises OntapAPIError(NOT_FOUND) for a missing snapshot and
        OntapAPIError(JOB_TRACKING_FAILURE) when the appliance lost track of
        the clone job."""

    @abstractmethod
    def volume_clone_create_async(self, name: str, source: str, snapshot: str) -> str:
        """Submit a clone job and return its job id."""

    @abstractmethod
    def job_get_status(self, job_id: str) -> JobStatus:
        pass

    @abstractmethod
    def volume_clone_split_start(self, name: str) -> None:
        pass

    # Volumes

    @abstractmethod
    def volume_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def volume_get(self, name: str) -> VolumeAttributes:
        pass

    @abstractmethod
    def volume_mount(self, name: str, junction_path: str) -> None:
        pass

    @abstractmethod
    def volume_unmount(self, name: str, force: bool) -> None:
        pass

    @abstractmethod
    def volume_offline(self, name: str) -> None:
        pass

    @abstractmethod
    def volume_modify_export_policy(self, name: str, policy_name: str) -> None:
        pass

    @abstractmethod
    def volume_list_all_backed_by_snapshot(self, volume_name: str, snapshot_name: str) -> List[str]:
        pass

    # Aggregates

    @abstractmethod
    def vserver_get_aggregate_names(self) -> List[str]:
        pass

    @abstractmethod
    def aggr_space_get(self, aggregate: str) -> List[AggregateSpace]:
        pass

    @abstractmethod
    def vserver_show_aggr_get(self) -> List[AggregateAttributes]:
        """Raises OntapAPIError(INSUFFICIENT_PRIVILEGE) for scoped users."""

    # iSCSI / LUNs

    @abstractmethod
    def iscsi_node_get_name(self) -> str:
        pass

    @abstractmethod
    def iscsi_interface_list(self) -> List[IscsiInterface]:
        pass

    @abstractmethod
    def lun_list_for_vserver(self) -> List[str]:
        pass

    @abstractmethod
    def lun_get_attribute(self, lun_path: str, name: str) -> str:
        pass

    @abstractmethod
    def lun_map_get(self, igroup_name: str, lun_path: str) -> List[LunMapInfo]:
        pass

    @abstractmethod
    def lun_map_if_not_mapped(self, igroup_name: str, lun_path: str, import_only: bool = False) -> int:
        """Map the LUN unless already mapped and return its LUN id."""

    @abstractmethod
    def net_interface_get_data_lif_node(self, ip_address: str) -> str:
        pass
