"""Pytest configuration and fixtures for ONTAP driver unit tests."""

from collections import Counter
from unittest.mock import Mock, patch

import pytest

from ontap_storage.drivers.ontap import api
from ontap_storage.drivers.ontap import configuration
from ontap_storage.drivers.ontap import exceptions
from ontap_storage.drivers.ontap.exceptions import ErrorCode


def api_error(code, details="injected"):
    return exceptions.OntapAPIError(code=code, details=details)


class FakeOntapClient(api.OntapClient):
    """In-memory appliance with call counters and injectable failures.

    ``fail(method, err)`` queues an exception raised by the next call of
    ``method``; ``calls`` counts every call by method name.
    """

    svm = "svm0"

    def __init__(self):
        self.calls = Counter()
        self.errors = {}
        self.features = {api.FLEXGROUP_CLONE}

        self.export_policies = {}
        self._next_rule_index = 1
        self.igroups = {}

        self.default_auth = api.DefaultAuth(auth_type="none")
        self.set_auth_args = None

        self.volumes = {}
        self.snapshots = {}
        self.clone_children = {}
        self.mounted = {}
        self.split_started = []
        self.jobs = {}
        self.job_states = {}

        self.aggregates = ["aggr1", "aggr2"]
        self.aggr_spaces = []
        self.aggr_attributes = []

        self.iscsi_node_name = "iqn.1992-08.com.netapp:sn.svm0"
        self.iscsi_interfaces = [api.IscsiInterface("10.0.0.1"), api.IscsiInterface("10.0.0.2")]
        self.luns = []
        self.lun_attributes = {}
        self.lun_maps = {}
        self.lif_nodes = {"10.0.0.1": "node1", "10.0.0.2": "node2"}

    def fail(self, method, err):
        self.errors.setdefault(method, []).append(err)

    def _record(self, method):
        self.calls[method] += 1
        pending = self.errors.get(method)
        if pending:
            raise pending.pop(0)

    def add_volume(self, name, aggregate="aggr1", space_reserve="none", size=1073741824):
        self.volumes[name] = api.VolumeAttributes(name, aggregate, space_reserve, size)
        self.snapshots.setdefault(name, [])

    def rules(self, policy_name):
        return sorted(self.export_policies[policy_name].values())

    def supports_feature(self, feature):
        self._record("supports_feature")
        return feature in self.features

    # Export policies

    def export_policy_create(self, policy_name):
        self._record("export_policy_create")
        if policy_name in self.export_policies:
            raise api_error(ErrorCode.ALREADY_EXISTS)
        self.export_policies[policy_name] = {}

    def export_policy_destroy(self, policy_name):
        self._record("export_policy_destroy")
        if policy_name not in self.export_policies:
            raise api_error(ErrorCode.NOT_FOUND)
        del self.export_policies[policy_name]

    def export_policy_get(self, policy_name):
        self._record("export_policy_get")
        if policy_name not in self.export_policies:
            raise api_error(ErrorCode.NOT_FOUND)
        return policy_name

    def export_rule_list(self, policy_name):
        self._record("export_rule_list")
        return [
            api.ExportRule(client_match=match, rule_index=index)
            for index, match in self.export_policies[policy_name].items()
        ]

    def export_rule_create(self, policy_name, client_match, protocols, ro_rules, rw_rules, superuser_rules):
        self._record("export_rule_create")
        self.export_policies[policy_name][self._next_rule_index] = client_match
        self._next_rule_index += 1

    def export_rule_destroy(self, policy_name, rule_index):
        self._record("export_rule_destroy")
        del self.export_policies[policy_name][rule_index]

    # Initiator groups

    def igroup_create(self, igroup_name, igroup_type, os_type):
        self._record("igroup_create")
        if igroup_name in self.igroups:
            raise api_error(ErrorCode.ALREADY_EXISTS)
        self.igroups[igroup_name] = []

    def igroup_get(self, igroup_name):
        self._record("igroup_get")
        return api.InitiatorGroup(igroup_name, list(self.igroups[igroup_name]))

    def igroup_add(self, igroup_name, initiator):
        self._record("igroup_add")
        members = self.igroups.setdefault(igroup_name, [])
        if initiator in members:
            raise api_error(ErrorCode.INITIATOR_ALREADY_PRESENT)
        members.append(initiator)

    def igroup_remove(self, igroup_name, initiator, force):
        self._record("igroup_remove")
        members = self.igroups[igroup_name]
        if initiator not in members:
            raise api_error(ErrorCode.INITIATOR_NOT_PRESENT)
        members.remove(initiator)

    # CHAP

    def iscsi_initiator_get_default_auth(self):
        self._record("iscsi_initiator_get_default_auth")
        return self.default_auth

    def iscsi_initiator_set_default_auth(self, auth_type, user_name, passphrase, outbound_user_name, outbound_passphrase):
        self._record("iscsi_initiator_set_default_auth")
        self.set_auth_args = (auth_type, user_name, passphrase, outbound_user_name, outbound_passphrase)
        self.default_auth = api.DefaultAuth(auth_type, user_name, outbound_user_name)

    # Snapshots

    def snapshot_create(self, snapshot_name, volume_name):
        self._record("snapshot_create")
        self.snapshots.setdefault(volume_name, []).append(api.SnapshotInfo(snapshot_name, 1700000000))

    def snapshot_list(self, volume_name):
        self._record("snapshot_list")
        return list(self.snapshots.get(volume_name, []))

    def snapshot_delete(self, snapshot_name, volume_name):
        self._record("snapshot_delete")
        if self.clone_children.get((volume_name, snapshot_name)):
            raise api_error(ErrorCode.SNAPSHOT_BUSY, "snapshot has clones")
        self.snapshots[volume_name] = [s for s in self.snapshots[volume_name] if s.name != snapshot_name]

    def snapshot_restore_volume(self, snapshot_name, volume_name):
        self._record("snapshot_restore_volume")

    # Clones

    def _clone(self, name, source, snapshot):
        if not any(s.name == snapshot for s in self.snapshots.get(source, [])):
            raise api_error(ErrorCode.NOT_FOUND, "snapshot not found")
        self.add_volume(name)
        self.clone_children.setdefault((source, snapshot), []).append(name)

    def volume_clone_create(self, name, source, snapshot):
        self._record("volume_clone_create")
        self._clone(name, source, snapshot)

    def volume_clone_create_async(self, name, source, snapshot):
        self._record("volume_clone_create_async")
        self._clone(name, source, snapshot)
        job_id = "job-%d" % (len(self.jobs) + 1)
        self.jobs[job_id] = name
        return job_id

    def job_get_status(self, job_id):
        self._record("job_get_status")
        states = self.job_states.get(job_id)
        state = states.pop(0) if states else api.JOB_STATE_SUCCESS
        return api.JobStatus(job_id, state)

    def volume_clone_split_start(self, name):
        self._record("volume_clone_split_start")
        self.split_started.append(name)

    # Volumes

    def volume_exists(self, name):
        self._record("volume_exists")
        return name in self.volumes

    def volume_get(self, name):
        self._record("volume_get")
        if name not in self.volumes:
            raise api_error(ErrorCode.NOT_FOUND)
        return self.volumes[name]

    def volume_mount(self, name, junction_path):
        self._record("volume_mount")
        self.mounted[name] = junction_path

    def volume_unmount(self, name, force):
        self._record("volume_unmount")
        if name not in self.volumes:
            raise api_error(ErrorCode.NOT_FOUND)
        self.mounted.pop(name, None)

    def volume_offline(self, name):
        self._record("volume_offline")

    def volume_modify_export_policy(self, name, policy_name):
        self._record("volume_modify_export_policy")

    def volume_list_all_backed_by_snapshot(self, volume_name, snapshot_name):
        self._record("volume_list_all_backed_by_snapshot")
        return list(self.clone_children.get((volume_name, snapshot_name), []))

    # Aggregates

    def vserver_get_aggregate_names(self):
        self._record("vserver_get_aggregate_names")
        return list(self.aggregates)

    def aggr_space_get(self, aggregate):
        self._record("aggr_space_get")
        return list(self.aggr_spaces)

    def vserver_show_aggr_get(self):
        self._record("vserver_show_aggr_get")
        return list(self.aggr_attributes)

    # iSCSI / LUNs

    def iscsi_node_get_name(self):
        self._record("iscsi_node_get_name")
        return self.iscsi_node_name

    def iscsi_interface_list(self):
        self._record("iscsi_interface_list")
        return list(self.iscsi_interfaces)

    def lun_list_for_vserver(self):
        self._record("lun_list_for_vserver")
        return list(self.luns)

    def lun_get_attribute(self, lun_path, name):
        self._record("lun_get_attribute")
        if (lun_path, name) not in self.lun_attributes:
            raise api_error(ErrorCode.NOT_FOUND)
        return self.lun_attributes[(lun_path, name)]

    def lun_map_get(self, igroup_name, lun_path):
        self._record("lun_map_get")
        lun_map = self.lun_maps.get((igroup_name, lun_path))
        return [lun_map] if lun_map else []

    def lun_map_if_not_mapped(self, igroup_name, lun_path, import_only=False):
        self._record("lun_map_if_not_mapped")
        lun_map = self.lun_maps.setdefault(
            (igroup_name, lun_path),
            api.LunMapInfo(lun_path, igroup_name, len(self.lun_maps), ["node1"]),
        )
        return lun_map.lun_id

    def net_interface_get_data_lif_node(self, ip_address):
        self._record("net_interface_get_data_lif_node")
        return self.lif_nodes[ip_address]


@pytest.fixture
def fake_client():
    """Create an in-memory ONTAP appliance."""
    return FakeOntapClient()


@pytest.fixture
def mock_ontap_client():
    """Create a mock ONTAP management client."""
    client = Mock(spec=api.OntapClient)
    client.svm = "svm0"
    client.volume_exists.return_value = False
    client.supports_feature.return_value = True
    return client


@pytest.fixture
def driver_config():
    """Create a populated NAS driver configuration."""
    config = configuration.OntapStorageDriverConfig(
        storage_driver_name=configuration.ONTAP_NAS,
        backend_name="nas1",
        management_lif="10.0.0.10",
        data_lif="10.0.0.1",
        svm="svm0",
        username="admin",
        password="secret",
    )
    configuration.populate_configuration_defaults(config)
    return config


@pytest.fixture
def san_config():
    """Create a populated SAN driver configuration with CHAP credentials."""
    config = configuration.OntapStorageDriverConfig(
        storage_driver_name=configuration.ONTAP_SAN,
        backend_name="san1",
        management_lif="10.0.0.10",
        svm="svm0",
        chap_username="initiator",
        chap_initiator_secret="initiatorsecret1",
        chap_target_username="target",
        chap_target_initiator_secret="targetsecret0001",
    )
    configuration.populate_configuration_defaults(config)
    return config


@pytest.fixture
def no_sleep():
    """Skip backoff sleeps."""
    with patch("ontap_storage.drivers.ontap.utils.time.sleep") as mock_sleep:
        yield mock_sleep
