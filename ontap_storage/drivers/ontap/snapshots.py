"""Clone and snapshot orchestration.

A clone is created in a fixed sequence of appliance calls:

    check target absent -> ensure source snapshot -> create clone
    (sync, or async job polled for at most 120s) -> mount (ontap-nas only)
    -> start split if requested

The appliance sometimes loses track of a synchronous clone job even though
the clone was created. That failure is answered by probing for the volume
with exponential backoff instead of failing straight away.
"""

import datetime
from typing import Callable, List, Optional

from oslo_log import log as logging
from oslo_utils import strutils
from oslo_utils import timeutils

from . import api
from . import configuration
from . import exceptions
from . import models
from . import utils
from .exceptions import ErrorCode

LOG = logging.getLogger(__name__)

SNAPSHOT_NAME_FORMAT = "%Y%m%dT%H%M%SZ"
SNAPSHOT_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

CLONE_JOB_TIMEOUT = utils.CLONE_JOB_BACKOFF.max_elapsed_time

SizeGetter = Callable[[str], int]


class _JobInProgress(exceptions.OntapStorageException):
    message = "Job %(job_id)s is %(state)s"


def _format_created(access_time: int) -> str:
    created = datetime.datetime.fromtimestamp(int(access_time), tz=datetime.timezone.utc)
    return created.strftime(SNAPSHOT_TIMESTAMP_FORMAT)


def probe_for_volume(name: str, client) -> None:
    """Wait for a volume to appear, with exponential backoff.

    Raises:
        VolumeNotFound: If the volume is still absent after the probe budget
    """

    def check_volume_exists():
        if not client.volume_exists(name):
            raise exceptions.VolumeNotFound(volume_name=name)

    try:
        utils.retry_with_backoff(
            check_volume_exists,
            lambda err: isinstance(err, exceptions.OntapStorageException),
            utils.PROBE_BACKOFF,
        )
    except exceptions.OntapStorageException as err:
        LOG.warning(
            "Could not find volume %s after %3.2f seconds.",
            name,
            utils.PROBE_BACKOFF.max_elapsed_time,
        )
        raise exceptions.VolumeNotFound(volume_name=name) from err
    LOG.debug("Volume %s found.", name)


def _wait_for_clone_job(name: str, job_id: str, client) -> None:
    def check_job():
        status = client.job_get_status(job_id)
        if status.state == api.JOB_STATE_SUCCESS:
            return
        if status.state == api.JOB_STATE_FAILURE:
            raise exceptions.CloneError(
                clone_name=name, details="clone job %s failed: %s" % (job_id, status.message)
            )
        raise _JobInProgress(job_id=job_id, state=status.state)

    try:
        utils.retry_with_backoff(
            check_job,
            lambda err: isinstance(err, _JobInProgress),
            utils.CLONE_JOB_BACKOFF,
        )
    except _JobInProgress as err:
        LOG.error("Clone job %s for %s did not finish in time.", job_id, name)
        raise exceptions.CloneTimeout(clone_name=name, timeout=CLONE_JOB_TIMEOUT) from err
    except exceptions.OntapAPIError as err:
        if err.is_code(ErrorCode.TIMEOUT):
            LOG.error("Appliance timed out waiting on clone job %s for %s.", job_id, name)
            raise exceptions.CloneTimeout(clone_name=name, timeout=CLONE_JOB_TIMEOUT) from err
        raise exceptions.CloneError(
            clone_name=name, details="waiting for async response failed: %s" % err
        ) from err


def create_ontap_clone(name: str, source: str, snapshot: str, split: bool, config, client, use_async: bool) -> None:
    """Create a clone of ``source`` named ``name``.

    Args:
        name: Internal name of the clone
        source: Internal name of the source volume
        snapshot: Source snapshot; a timestamp-named one is created if empty
        split: Start splitting the clone from its parent once created
        config: Driver config
        client: OntapClient
        use_async: Submit the clone as a job and wait for it (FlexGroups)

    Raises:
        VolumeAlreadyExists: If a volume named ``name`` already exists
        SnapshotNotFound: If ``snapshot`` does not exist on ``source``
        CloneTimeout: If the async clone job did not finish in time
        CloneError: On any other failure
    """
    try:
        exists = client.volume_exists(name)
    except exceptions.OntapAPIError as err:
        raise exceptions.CloneError(
            clone_name=name, details="error checking for existing volume: %s" % err
        ) from err
    if exists:
        raise exceptions.VolumeAlreadyExists(volume_name=name)

    if not snapshot:
        # TODO: reuse a previous attempt's snapshot so retried clones stop leaving orphans
        snapshot = timeutils.utcnow().strftime(SNAPSHOT_NAME_FORMAT)
        try:
            client.snapshot_create(snapshot, source)
        except exceptions.OntapAPIError as err:
            raise exceptions.CloneError(
                clone_name=name, details="error creating snapshot: %s" % err
            ) from err
        LOG.debug("Created snapshot %s of %s for clone %s.", snapshot, source, name)

    if use_async:
        try:
            job_id = client.volume_clone_create_async(name, source, snapshot)
        except exceptions.OntapAPIError as err:
            if err.is_code(ErrorCode.NOT_FOUND):
                raise exceptions.SnapshotNotFound(
                    snapshot_name=snapshot, volume_name=source
                ) from err
            raise exceptions.CloneError(clone_name=name, details=str(err)) from err
        _wait_for_clone_job(name, job_id, client)
    else:
        try:
            client.volume_clone_create(name, source, snapshot)
        except exceptions.OntapAPIError as err:
            if err.is_code(ErrorCode.NOT_FOUND):
                raise exceptions.SnapshotNotFound(
                    snapshot_name=snapshot, volume_name=source
                ) from err
            if not err.is_code(ErrorCode.JOB_TRACKING_FAILURE):
                raise exceptions.CloneError(clone_name=name, details=str(err)) from err
            LOG.warning(
                "Problem encountered during the clone create operation of %s "
                "from %s@%s, attempting to verify the clone was actually created: %s",
                name,
                source,
                snapshot,
                err,
            )
            try:
                probe_for_volume(name, client)
            except exceptions.VolumeNotFound as probe_err:
                raise exceptions.CloneError(clone_name=name, details=str(probe_err)) from err

    if config.storage_driver_name == configuration.ONTAP_NAS:
        try:
            client.volume_mount(name, "/" + name)
        except exceptions.OntapAPIError as err:
            raise exceptions.CloneError(
                clone_name=name, details="error mounting volume to junction: %s" % err
            ) from err

    if split:
        try:
            client.volume_clone_split_start(name)
        except exceptions.OntapAPIError as err:
            raise exceptions.CloneError(
                clone_name=name, details="error splitting clone: %s" % err
            ) from err
        LOG.info("Started splitting clone %s from %s.", name, source)


def resolve_split_on_clone(config, vol_config, storage_pool) -> bool:
    """Effective splitOnClone: request, else source pool, else backend.

    Raises:
        InvalidConfiguration: If the winning value is not a boolean
    """
    split_value = ""
    if storage_pool is not None:
        split_value = storage_pool.internal_attributes.get(models.SPLIT_ON_CLONE, "")
    if not split_value:
        split_value = config.split_on_clone
    if vol_config.split_on_clone:
        split_value = vol_config.split_on_clone

    try:
        return strutils.bool_from_string(split_value, strict=True)
    except ValueError as err:
        raise exceptions.InvalidConfiguration(
            details="invalid boolean value for splitOnClone: %s" % split_value
        ) from err


def create_clone_nas(driver, vol_config, storage_pool, use_async: bool) -> None:
    """Clone a NAS volume described by ``vol_config``.

    Args:
        driver: Driver exposing get_config() and get_api()
        vol_config: Clone request; names the source volume and snapshot
        storage_pool: Pool of the source volume, if known
        use_async: Clone through an appliance job (FlexGroups)
    """
    config = driver.get_config()
    client = driver.get_api()

    split = resolve_split_on_clone(config, vol_config, storage_pool)

    if use_async and not client.supports_feature(api.FLEXGROUP_CLONE):
        raise exceptions.CloneError(
            clone_name=vol_config.internal_name,
            details="the appliance does not support FlexGroup cloning",
        )

    LOG.debug(
        "Creating clone %s from %s@%s (split=%s).",
        vol_config.internal_name,
        vol_config.clone_source_volume_internal,
        vol_config.clone_source_snapshot,
        split,
    )
    create_ontap_clone(
        vol_config.internal_name,
        vol_config.clone_source_volume_internal,
        vol_config.clone_source_snapshot,
        split,
        config,
        client,
        use_async,
    )


def _list_snapshots(volume_name: str, client) -> List[api.SnapshotInfo]:
    try:
        return client.snapshot_list(volume_name)
    except exceptions.OntapAPIError as err:
        raise exceptions.SnapshotError(details="error enumerating snapshots: %s" % err) from err


def _volume_size(volume_name: str, size_getter: SizeGetter) -> int:
    try:
        return size_getter(volume_name)
    except exceptions.OntapStorageException as err:
        raise exceptions.SnapshotError(details="error reading volume size: %s" % err) from err


def get_snapshot(snap_config, config, client, size_getter: SizeGetter) -> Optional[models.Snapshot]:
    """Return a snapshot, or None if it does not exist.

    Raises:
        SnapshotError: If the appliance could not be queried
    """
    size = _volume_size(snap_config.volume_internal_name, size_getter)
    for snap in _list_snapshots(snap_config.volume_internal_name, client):
        if snap.name == snap_config.internal_name:
            return models.Snapshot(
                config=snap_config,
                created=_format_created(snap.access_time),
                size_bytes=size,
            )
    LOG.warning(
        "Snapshot %s not found in volume %s.",
        snap_config.internal_name,
        snap_config.volume_internal_name,
    )
    return None


def get_snapshots(vol_config, config, client, size_getter: SizeGetter) -> List[models.Snapshot]:
    """Return all snapshots of a volume."""
    size = _volume_size(vol_config.internal_name, size_getter)
    snapshots = []
    for snap in _list_snapshots(vol_config.internal_name, client):
        snap_config = models.SnapshotConfig(
            name=snap.name,
            internal_name=snap.name,
            volume_name=vol_config.name,
            volume_internal_name=vol_config.internal_name,
        )
        snapshots.append(
            models.Snapshot(
                config=snap_config,
                created=_format_created(snap.access_time),
                size_bytes=size,
            )
        )
    return snapshots


def create_snapshot(snap_config, config, client, size_getter: SizeGetter) -> models.Snapshot:
    """Create a snapshot and return it as read back from the appliance.

    Raises:
        VolumeNotFound: If the source volume does not exist
        SnapshotError: If the snapshot could not be created or found
    """
    volume_name = snap_config.volume_internal_name
    snapshot_name = snap_config.internal_name

    get_volume(volume_name, client)
    size = _volume_size(volume_name, size_getter)

    try:
        client.snapshot_create(snapshot_name, volume_name)
    except exceptions.OntapAPIError as err:
        raise exceptions.SnapshotError(details="error creating snapshot: %s" % err) from err

    for snap in _list_snapshots(volume_name, client):
        if snap.name == snapshot_name:
            LOG.debug("Snapshot %s of %s created.", snapshot_name, volume_name)
            return models.Snapshot(
                config=snap_config,
                created=_format_created(snap.access_time),
                size_bytes=size,
            )
    raise exceptions.SnapshotError(
        details="could not find snapshot %s for source volume %s" % (snapshot_name, volume_name)
    )


def restore_snapshot(snap_config, config, client) -> None:
    try:
        client.snapshot_restore_volume(snap_config.internal_name, snap_config.volume_internal_name)
    except exceptions.OntapAPIError as err:
        raise exceptions.SnapshotError(details="error restoring snapshot: %s" % err) from err
    LOG.debug(
        "Restored volume %s to snapshot %s.",
        snap_config.volume_internal_name,
        snap_config.internal_name,
    )


def delete_snapshot(snap_config, config, client) -> None:
    """Delete a snapshot.

    When clones still depend on the snapshot, splitting one of them is
    started before :class:`SnapshotBusy` is raised, so a later retry can
    make progress.

    Raises:
        SnapshotBusy: If the snapshot has dependent clones
        SnapshotError: On any other failure
    """
    try:
        client.snapshot_delete(snap_config.internal_name, snap_config.volume_internal_name)
    except exceptions.OntapAPIError as err:
        if err.is_code(ErrorCode.SNAPSHOT_BUSY):
            try:
                split_volume_from_busy_snapshot(snap_config, config, client)
            except exceptions.OntapStorageException as split_err:
                LOG.warning(
                    "Could not start splitting a clone of busy snapshot %s: %s",
                    snap_config.internal_name,
                    split_err,
                )
            raise exceptions.SnapshotBusy(
                snapshot_name=snap_config.internal_name,
                volume_name=snap_config.volume_internal_name,
                details=err.details,
            ) from err
        raise exceptions.SnapshotError(details="error deleting snapshot: %s" % err) from err
    LOG.debug("Deleted snapshot %s.", snap_config.internal_name)


def split_volume_from_busy_snapshot(snap_config, config, client) -> None:
    """Start splitting the alphabetically first clone of a snapshot.

    Only one split is started per call to bound the split load on the
    appliance.
    """
    try:
        children = client.volume_list_all_backed_by_snapshot(
            snap_config.volume_internal_name, snap_config.internal_name
        )
    except exceptions.OntapAPIError as err:
        LOG.error("Could not list volumes backed by snapshot %s.", snap_config.internal_name)
        raise exceptions.SnapshotError(
            details="error listing clones of snapshot %s: %s" % (snap_config.internal_name, err)
        ) from err
    if not children:
        return

    child = sorted(children)[0]
    try:
        client.volume_clone_split_start(child)
    except exceptions.OntapAPIError as err:
        LOG.error("Could not begin splitting clone %s from snapshot.", child)
        raise exceptions.CloneError(
            clone_name=child, details="error splitting clone: %s" % err
        ) from err
    LOG.info(
        "Began splitting clone %s from snapshot %s of %s.",
        child,
        snap_config.internal_name,
        snap_config.volume_internal_name,
    )


def get_volume(name: str, client) -> None:
    """Raise VolumeNotFound unless the volume exists."""
    try:
        exists = client.volume_exists(name)
    except exceptions.OntapAPIError as err:
        raise exceptions.VolumeError(
            volume_name=name, details="error checking for existing volume: %s" % err
        ) from err
    if not exists:
        LOG.debug("Volume %s does not exist.", name)
        raise exceptions.VolumeNotFound(volume_name=name)


def unmount_and_offline_volume(client, name: str) -> bool:
    """Unmount and offline a volume ahead of its deletion.

    Returns:
        False if the volume no longer exists, True otherwise

    Raises:
        VolumeError: If either call fails for another reason
    """
    try:
        client.volume_unmount(name, True)
    except exceptions.OntapAPIError as err:
        if err.is_code(ErrorCode.NOT_FOUND):
            LOG.warning("Volume %s does not exist.", name)
            return False
        raise exceptions.VolumeError(
            volume_name=name, details="error unmounting volume: %s" % err
        ) from err

    try:
        client.volume_offline(name)
    except exceptions.OntapAPIError as err:
        if err.is_code(ErrorCode.VOLUME_OFFLINE):
            LOG.warning("Volume %s already offline.", name)
        elif err.is_code(ErrorCode.NOT_FOUND):
            LOG.debug("Volume %s already deleted, skipping destroy.", name)
            return False
        else:
            raise exceptions.VolumeError(
                volume_name=name, details="error taking volume offline: %s" % err
            ) from err
    return True
