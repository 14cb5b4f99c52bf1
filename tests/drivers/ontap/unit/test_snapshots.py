"""Unit tests for clone and snapshot orchestration."""

import re
from unittest.mock import Mock

import pytest

from ontap_storage.drivers.ontap import api
from ontap_storage.drivers.ontap import configuration
from ontap_storage.drivers.ontap import exceptions
from ontap_storage.drivers.ontap import models
from ontap_storage.drivers.ontap import snapshots
from ontap_storage.drivers.ontap import utils
from ontap_storage.drivers.ontap.exceptions import ErrorCode


@pytest.fixture
def source(fake_client):
    fake_client.add_volume("src")
    fake_client.snapshot_create("snap1", "src")
    fake_client.calls.clear()
    return "src"


@pytest.fixture
def snap_config():
    return models.SnapshotConfig(
        name="snap1", internal_name="snap1", volume_name="vol1", volume_internal_name="src"
    )


class TestCreateClone:
    """Test the clone creation sequence."""

    def test_sync_clone_mounts_on_nas(self, fake_client, driver_config, source):
        snapshots.create_ontap_clone("clone1", source, "snap1", False, driver_config, fake_client, False)

        assert "clone1" in fake_client.volumes
        assert fake_client.mounted == {"clone1": "/clone1"}
        assert fake_client.split_started == []

    @pytest.mark.parametrize(
        "driver_name",
        [configuration.ONTAP_NAS_FLEXGROUP, configuration.ONTAP_SAN, configuration.ONTAP_SAN_ECONOMY],
    )
    def test_clone_not_mounted_for_other_drivers(self, fake_client, driver_config, source, driver_name):
        driver_config.storage_driver_name = driver_name

        snapshots.create_ontap_clone("clone1", source, "snap1", False, driver_config, fake_client, False)

        assert fake_client.calls["volume_mount"] == 0

    def test_split_requested(self, fake_client, driver_config, source):
        snapshots.create_ontap_clone("clone1", source, "snap1", True, driver_config, fake_client, False)

        assert fake_client.split_started == ["clone1"]

    def test_existing_target_fails_before_any_change(self, fake_client, driver_config, source):
        """Test that an existing clone name fails with no further calls."""
        fake_client.add_volume("clone1")

        with pytest.raises(exceptions.VolumeAlreadyExists, match="clone1"):
            snapshots.create_ontap_clone("clone1", source, "", True, driver_config, fake_client, False)

        assert dict(fake_client.calls) == {"volume_exists": 1}

    def test_missing_snapshot_not_retried(self, fake_client, driver_config, source, no_sleep):
        """Test that an absent source snapshot is reported without probing."""
        with pytest.raises(exceptions.SnapshotNotFound, match="missing"):
            snapshots.create_ontap_clone("clone1", source, "missing", False, driver_config, fake_client, False)

        assert fake_client.calls["volume_exists"] == 1
        no_sleep.assert_not_called()

    def test_creates_timestamp_snapshot_when_none_given(self, fake_client, driver_config, source):
        snapshots.create_ontap_clone("clone1", source, "", False, driver_config, fake_client, False)

        names = [s.name for s in fake_client.snapshots[source]]
        assert len(names) == 2
        assert re.match(r"^\d{8}T\d{6}Z$", names[1])
        assert fake_client.clone_children[(source, names[1])] == ["clone1"]

    def test_snapshot_create_failure(self, fake_client, driver_config, source):
        fake_client.fail("snapshot_create", exceptions.OntapAPIError(details="full"))

        with pytest.raises(exceptions.CloneError, match="error creating snapshot"):
            snapshots.create_ontap_clone("clone1", source, "", False, driver_config, fake_client, False)

    def test_lost_job_probe_finds_clone(self, mock_ontap_client, driver_config, no_sleep):
        """Test that a lost clone job is answered by probing for the volume."""
        mock_ontap_client.volume_clone_create.side_effect = exceptions.OntapAPIError(
            code=ErrorCode.JOB_TRACKING_FAILURE
        )
        mock_ontap_client.volume_exists.side_effect = [False, False, False, True]

        snapshots.create_ontap_clone("clone1", "src", "snap1", False, driver_config, mock_ontap_client, False)

        assert mock_ontap_client.volume_exists.call_count == 4
        assert no_sleep.call_count == 2
        mock_ontap_client.volume_mount.assert_called_once_with("clone1", "/clone1")

    def test_lost_job_probe_gives_up(self, mock_ontap_client, driver_config, no_sleep):
        """Test that the probe is bounded by the backoff budget."""
        mock_ontap_client.volume_clone_create.side_effect = exceptions.OntapAPIError(
            code=ErrorCode.JOB_TRACKING_FAILURE
        )
        mock_ontap_client.volume_exists.return_value = False

        with pytest.raises(exceptions.CloneError, match="clone1"):
            snapshots.create_ontap_clone("clone1", "src", "snap1", False, driver_config, mock_ontap_client, False)

        assert mock_ontap_client.volume_exists.call_count == 1 + utils.PROBE_BACKOFF.max_attempts()
        mock_ontap_client.volume_mount.assert_not_called()

    def test_other_clone_failure(self, mock_ontap_client, driver_config, no_sleep):
        mock_ontap_client.volume_clone_create.side_effect = exceptions.OntapAPIError(details="boom")

        with pytest.raises(exceptions.CloneError, match="boom"):
            snapshots.create_ontap_clone("clone1", "src", "snap1", False, driver_config, mock_ontap_client, False)

        assert mock_ontap_client.volume_exists.call_count == 1

    def test_mount_failure(self, fake_client, driver_config, source):
        fake_client.fail("volume_mount", exceptions.OntapAPIError(details="junction"))

        with pytest.raises(exceptions.CloneError, match="junction"):
            snapshots.create_ontap_clone("clone1", source, "snap1", False, driver_config, fake_client, False)

    def test_split_failure(self, fake_client, driver_config, source):
        fake_client.fail("volume_clone_split_start", exceptions.OntapAPIError(details="split"))

        with pytest.raises(exceptions.CloneError, match="error splitting clone"):
            snapshots.create_ontap_clone("clone1", source, "snap1", True, driver_config, fake_client, False)


class TestAsyncClone:
    """Test clones created as appliance jobs."""

    @pytest.fixture(autouse=True)
    def flexgroup(self, driver_config):
        driver_config.storage_driver_name = configuration.ONTAP_NAS_FLEXGROUP

    def test_async_clone_waits_for_job(self, fake_client, driver_config, source, no_sleep):
        fake_client.job_states["job-1"] = [api.JOB_STATE_QUEUED, api.JOB_STATE_RUNNING]

        snapshots.create_ontap_clone("clone1", source, "snap1", False, driver_config, fake_client, True)

        assert fake_client.calls["job_get_status"] == 3
        assert fake_client.calls["volume_clone_create"] == 0
        assert fake_client.calls["volume_mount"] == 0

    def test_async_clone_timeout(self, mock_ontap_client, driver_config, no_sleep):
        mock_ontap_client.volume_clone_create_async.return_value = "job-1"
        mock_ontap_client.job_get_status.return_value = api.JobStatus("job-1", api.JOB_STATE_RUNNING)

        with pytest.raises(exceptions.CloneTimeout, match="120"):
            snapshots.create_ontap_clone("clone1", "src", "snap1", False, driver_config, mock_ontap_client, True)

        assert mock_ontap_client.job_get_status.call_count == utils.CLONE_JOB_BACKOFF.max_attempts()

    def test_async_clone_job_failure(self, mock_ontap_client, driver_config, no_sleep):
        mock_ontap_client.volume_clone_create_async.return_value = "job-1"
        mock_ontap_client.job_get_status.return_value = api.JobStatus(
            "job-1", api.JOB_STATE_FAILURE, "no space"
        )

        with pytest.raises(exceptions.CloneError, match="no space") as exc_info:
            snapshots.create_ontap_clone("clone1", "src", "snap1", False, driver_config, mock_ontap_client, True)

        assert not isinstance(exc_info.value, exceptions.CloneTimeout)
        assert mock_ontap_client.job_get_status.call_count == 1

    def test_async_clone_appliance_timeout(self, mock_ontap_client, driver_config, no_sleep):
        mock_ontap_client.volume_clone_create_async.return_value = "job-1"
        mock_ontap_client.job_get_status.side_effect = exceptions.OntapAPIError(
            code=ErrorCode.TIMEOUT, details="job wait expired"
        )

        with pytest.raises(exceptions.CloneTimeout, match="120"):
            snapshots.create_ontap_clone("clone1", "src", "snap1", False, driver_config, mock_ontap_client, True)

        assert mock_ontap_client.job_get_status.call_count == 1

    def test_async_clone_missing_snapshot(self, fake_client, driver_config, source):
        with pytest.raises(exceptions.SnapshotNotFound):
            snapshots.create_ontap_clone("clone1", source, "missing", False, driver_config, fake_client, True)


class TestSplitOnClone:
    """Test splitOnClone precedence."""

    @pytest.mark.parametrize(
        "request_value, pool_value, backend_value, expected",
        [
            ("", "", "false", False),
            ("", "", "true", True),
            ("", "true", "false", True),
            ("false", "true", "true", False),
            ("true", "false", "false", True),
        ],
    )
    def test_precedence(self, driver_config, request_value, pool_value, backend_value, expected):
        driver_config.split_on_clone = backend_value
        vol_config = models.VolumeConfig("vol1", split_on_clone=request_value)
        pool = models.StoragePool("aggr1", internal_attributes={models.SPLIT_ON_CLONE: pool_value})

        assert snapshots.resolve_split_on_clone(driver_config, vol_config, pool) is expected

    def test_without_pool(self, driver_config):
        driver_config.split_on_clone = "true"

        assert snapshots.resolve_split_on_clone(driver_config, models.VolumeConfig("vol1"), None) is True

    def test_invalid_value(self, driver_config):
        with pytest.raises(exceptions.InvalidConfiguration, match="splitOnClone"):
            snapshots.resolve_split_on_clone(
                driver_config, models.VolumeConfig("vol1", split_on_clone="maybe"), None
            )


class TestCreateCloneNAS:
    """Test the driver-facing clone entry point."""

    def _driver(self, config, client):
        driver = Mock()
        driver.get_config.return_value = config
        driver.get_api.return_value = client
        return driver

    def test_clone_from_vol_config(self, fake_client, driver_config, source):
        vol_config = models.VolumeConfig(
            "clone",
            internal_name="ontap_clone",
            clone_source_volume_internal=source,
            clone_source_snapshot="snap1",
            split_on_clone="true",
        )

        snapshots.create_clone_nas(self._driver(driver_config, fake_client), vol_config, None, False)

        assert "ontap_clone" in fake_client.volumes
        assert fake_client.split_started == ["ontap_clone"]

    def test_flexgroup_clone_unsupported(self, fake_client, driver_config, source):
        fake_client.features = set()
        vol_config = models.VolumeConfig(
            "clone", internal_name="ontap_clone", clone_source_volume_internal=source
        )

        with pytest.raises(exceptions.CloneError, match="FlexGroup"):
            snapshots.create_clone_nas(self._driver(driver_config, fake_client), vol_config, None, True)

        assert fake_client.calls["volume_exists"] == 0


class TestSnapshots:
    """Test snapshot lifecycle helpers."""

    def test_get_snapshot(self, fake_client, driver_config, source, snap_config):
        snap = snapshots.get_snapshot(snap_config, driver_config, fake_client, lambda name: 1024)

        assert snap.config is snap_config
        assert snap.created == "2023-11-14T22:13:20Z"
        assert snap.size_bytes == 1024

    def test_get_snapshot_missing_returns_none(self, fake_client, driver_config, source):
        snap_config = models.SnapshotConfig("other", "other", "vol1", source)

        assert snapshots.get_snapshot(snap_config, driver_config, fake_client, lambda name: 1024) is None

    def test_get_snapshot_list_failure(self, fake_client, driver_config, source, snap_config):
        fake_client.fail("snapshot_list", exceptions.OntapAPIError(details="x"))

        with pytest.raises(exceptions.SnapshotError, match="enumerating"):
            snapshots.get_snapshot(snap_config, driver_config, fake_client, lambda name: 1024)

    def test_get_snapshot_size_failure(self, fake_client, driver_config, source, snap_config):
        def size_getter(name):
            raise exceptions.VolumeError(volume_name=name, details="gone")

        with pytest.raises(exceptions.SnapshotError, match="volume size"):
            snapshots.get_snapshot(snap_config, driver_config, fake_client, size_getter)

    def test_get_snapshots(self, fake_client, driver_config, source):
        fake_client.snapshot_create("snap2", source)
        vol_config = models.VolumeConfig("vol1", internal_name=source)

        snaps = snapshots.get_snapshots(vol_config, driver_config, fake_client, lambda name: 1)

        assert [s.config.name for s in snaps] == ["snap1", "snap2"]
        assert all(s.config.volume_name == "vol1" for s in snaps)

    def test_create_snapshot(self, fake_client, driver_config, source):
        snap_config = models.SnapshotConfig("snap2", "snap2", "vol1", source)

        snap = snapshots.create_snapshot(snap_config, driver_config, fake_client, lambda name: 2048)

        assert snap.size_bytes == 2048
        assert [s.name for s in fake_client.snapshots[source]] == ["snap1", "snap2"]

    def test_create_snapshot_missing_volume(self, fake_client, driver_config):
        snap_config = models.SnapshotConfig("snap2", "snap2", "vol1", "nope")

        with pytest.raises(exceptions.VolumeNotFound):
            snapshots.create_snapshot(snap_config, driver_config, fake_client, lambda name: 1)

        assert fake_client.calls["snapshot_create"] == 0

    def test_create_snapshot_not_listed(self, mock_ontap_client, driver_config):
        mock_ontap_client.volume_exists.return_value = True
        mock_ontap_client.snapshot_list.return_value = []
        snap_config = models.SnapshotConfig("snap2", "snap2", "vol1", "src")

        with pytest.raises(exceptions.SnapshotError, match="could not find snapshot"):
            snapshots.create_snapshot(snap_config, driver_config, mock_ontap_client, lambda name: 1)

    def test_restore_snapshot(self, mock_ontap_client, driver_config, snap_config):
        snapshots.restore_snapshot(snap_config, driver_config, mock_ontap_client)

        mock_ontap_client.snapshot_restore_volume.assert_called_once_with("snap1", "src")

    def test_restore_snapshot_failure(self, mock_ontap_client, driver_config, snap_config):
        mock_ontap_client.snapshot_restore_volume.side_effect = exceptions.OntapAPIError(details="x")

        with pytest.raises(exceptions.SnapshotError, match="restoring"):
            snapshots.restore_snapshot(snap_config, driver_config, mock_ontap_client)


class TestDeleteSnapshot:
    """Test snapshot deletion and the busy-snapshot split cascade."""

    def test_delete(self, fake_client, driver_config, source, snap_config):
        snapshots.delete_snapshot(snap_config, driver_config, fake_client)

        assert fake_client.snapshots[source] == []

    def test_busy_snapshot_splits_first_clone(self, fake_client, driver_config, source, snap_config):
        """Test that only the alphabetically first clone is split."""
        fake_client.clone_children[(source, "snap1")] = ["clone-b", "clone-c", "clone-a"]

        with pytest.raises(exceptions.SnapshotBusy, match="snap1"):
            snapshots.delete_snapshot(snap_config, driver_config, fake_client)

        assert fake_client.split_started == ["clone-a"]

    def test_busy_snapshot_split_failure_still_busy(self, fake_client, driver_config, source, snap_config):
        fake_client.clone_children[(source, "snap1")] = ["clone-a"]
        fake_client.fail("volume_clone_split_start", exceptions.OntapAPIError(details="x"))

        with pytest.raises(exceptions.SnapshotBusy):
            snapshots.delete_snapshot(snap_config, driver_config, fake_client)

    def test_busy_snapshot_list_failure_still_busy(self, fake_client, driver_config, source, snap_config):
        fake_client.clone_children[(source, "snap1")] = ["clone-a"]
        fake_client.fail("volume_list_all_backed_by_snapshot", exceptions.OntapAPIError(details="x"))

        with pytest.raises(exceptions.SnapshotBusy):
            snapshots.delete_snapshot(snap_config, driver_config, fake_client)

        assert fake_client.split_started == []

    def test_delete_failure(self, mock_ontap_client, driver_config, snap_config):
        mock_ontap_client.snapshot_delete.side_effect = exceptions.OntapAPIError(
            code=ErrorCode.NOT_FOUND, details="no snapshot"
        )

        with pytest.raises(exceptions.SnapshotError, match="error deleting snapshot"):
            snapshots.delete_snapshot(snap_config, driver_config, mock_ontap_client)

        mock_ontap_client.volume_list_all_backed_by_snapshot.assert_not_called()

    def test_split_without_children(self, fake_client, driver_config, source, snap_config):
        snapshots.split_volume_from_busy_snapshot(snap_config, driver_config, fake_client)

        assert fake_client.split_started == []


class TestVolumeHelpers:
    """Test volume existence and offline helpers."""

    def test_get_volume_missing(self, fake_client):
        with pytest.raises(exceptions.VolumeNotFound):
            snapshots.get_volume("nope", fake_client)

    def test_get_volume_error(self, mock_ontap_client):
        mock_ontap_client.volume_exists.side_effect = exceptions.OntapAPIError(details="x")

        with pytest.raises(exceptions.VolumeError):
            snapshots.get_volume("vol1", mock_ontap_client)

    def test_unmount_and_offline(self, fake_client, source):
        assert snapshots.unmount_and_offline_volume(fake_client, source) is True
        assert fake_client.calls["volume_offline"] == 1

    def test_unmount_missing_volume(self, fake_client):
        assert snapshots.unmount_and_offline_volume(fake_client, "nope") is False
        assert fake_client.calls["volume_offline"] == 0

    def test_offline_already_offline(self, fake_client, source):
        fake_client.fail("volume_offline", exceptions.OntapAPIError(code=ErrorCode.VOLUME_OFFLINE))

        assert snapshots.unmount_and_offline_volume(fake_client, source) is True

    def test_offline_failure(self, fake_client, source):
        fake_client.fail("volume_offline", exceptions.OntapAPIError(details="busy"))

        with pytest.raises(exceptions.VolumeError, match="offline"):
            snapshots.unmount_and_offline_volume(fake_client, source)
