"""Admission checks run before a volume is created or resized."""

from typing import Callable, Optional

from oslo_log import log as logging

from . import exceptions
from . import utils

LOG = logging.getLogger(__name__)

MINIMUM_VOLUME_SIZE_BYTES = 20971520  # 20 MiB

# Snapshot reserve left to the appliance's own default
NUMERICAL_VALUE_NOT_SET = -1

SPACE_RESERVE_THICK = "volume"


def check_aggregate_limits(aggregate: str, space_reserve: str, requested_size: int, config, client) -> None:
    """Refuse a request that would push aggregate usage past the configured limit.

    For thick volumes (space reserve ``volume``) the requested size counts
    towards usage immediately; thin volumes are judged on current usage
    only. Reaching the limit exactly already fails.

    Args:
        aggregate: Aggregate the volume will live on
        space_reserve: Space reserve mode of the volume
        requested_size: Requested size in bytes
        config: Driver config holding limitAggregateUsage, e.g. "80%"
        client: OntapClient

    Raises:
        AggregateLimitExceeded: If the limit is reached
        AggregateLimitError: If usage could not be determined
    """
    limit = (config.limit_aggregate_usage or "").replace("%", "").strip()
    if not limit:
        return

    try:
        percent_limit = float(limit)
    except ValueError as err:
        raise exceptions.InvalidConfiguration(
            details="invalid limitAggregateUsage %s" % config.limit_aggregate_usage
        ) from err

    if not aggregate:
        raise exceptions.AggregateLimitError(details="aggregate not specified")

    try:
        spaces = client.aggr_space_get(aggregate)
    except exceptions.OntapAPIError as err:
        raise exceptions.AggregateLimitError(
            details="error reading space of aggregate %s: %s" % (aggregate, err)
        ) from err

    for space in spaces:
        if space.aggregate != aggregate:
            LOG.debug("Skipping aggregate %s.", space.aggregate)
            continue

        LOG.info(
            "Aggregate %s: size=%s volumeFootprints=%s volumeFootprintsPercent=%s "
            "usedIncludingSnapshotReserve=%s usedIncludingSnapshotReservePercent=%s",
            space.aggregate,
            space.aggregate_size,
            space.volume_footprints,
            space.volume_footprints_percent,
            space.used_including_snapshot_reserve,
            space.used_including_snapshot_reserve_percent,
        )

        if not space.aggregate_size:
            raise exceptions.AggregateLimitError(
                details="aggregate %s reports no size" % aggregate
            )

        used = float(space.used_including_snapshot_reserve)
        size = float(space.aggregate_size)

        if space_reserve == SPACE_RESERVE_THICK:
            percent_used = (used + requested_size) / size * 100.0
            LOG.debug(
                "Calculating aggregate usage: (%s + %s) / %s = %s",
                used,
                requested_size,
                size,
                percent_used,
            )
            if percent_used >= percent_limit:
                raise exceptions.AggregateLimitExceeded(
                    aggregate=aggregate,
                    details="aggregate usage of %.2f %% would exceed the limit of %.2f %%"
                    % (percent_used, percent_limit),
                )
        else:
            percent_used = used / size * 100.0
            LOG.debug("Calculating aggregate usage: %s / %s = %s", used, size, percent_used)
            if percent_used >= percent_limit:
                raise exceptions.AggregateLimitExceeded(
                    aggregate=aggregate,
                    details="aggregate usage of %.2f %% exceeds the limit of %.2f %%"
                    % (percent_used, percent_limit),
                )

        LOG.debug("Request within specified limit, going ahead with create.")
        return

    raise exceptions.AggregateLimitError(
        details="could not find aggregate %s" % aggregate
    )


def check_aggregate_limits_for_flexvol(flexvol: str, requested_size: int, config, client) -> None:
    """Apply the aggregate limit to a volume growing inside an existing flexvol."""
    try:
        volume = client.volume_get(flexvol)
    except exceptions.OntapAPIError as err:
        raise exceptions.AggregateLimitError(
            details="error reading flexvol %s: %s" % (flexvol, err)
        ) from err

    if not volume.aggregate:
        raise exceptions.AggregateLimitError(
            details="aggregate info not available from flexvol %s" % flexvol
        )
    if volume.space_reserve is None:
        raise exceptions.AggregateLimitError(
            details="spaceReserve info not available from flexvol %s" % flexvol
        )

    check_aggregate_limits(volume.aggregate, volume.space_reserve, requested_size, config, client)


def get_volume_size(size_bytes: int, pool_default_size: str) -> int:
    """Resolve a requested size, falling back to the pool default when 0.

    Raises:
        VolumeSizeError: If the size is below the minimum or the default
            cannot be parsed
    """
    if size_bytes == 0:
        try:
            size_bytes = utils.convert_size_to_bytes(pool_default_size)
        except ValueError as err:
            raise exceptions.VolumeSizeError(
                details="invalid default size %s: %s" % (pool_default_size, err)
            ) from err

    if size_bytes < MINIMUM_VOLUME_SIZE_BYTES:
        raise exceptions.VolumeSizeError(
            details=(
                "requested volume size (%d bytes) is too small; the minimum "
                "volume size is %d bytes" % (size_bytes, MINIMUM_VOLUME_SIZE_BYTES)
            )
        )
    return size_bytes


def get_snapshot_reserve(snapshot_policy: str, snapshot_reserve: str) -> int:
    """Return the snapshot reserve percentage to request.

    An explicit reserve wins. Otherwise a ``none`` policy needs no reserve,
    and any other policy leaves the choice to the appliance
    (:data:`NUMERICAL_VALUE_NOT_SET`).

    Raises:
        InvalidConfiguration: If an explicit reserve is not an integer
    """
    if snapshot_reserve:
        try:
            return int(snapshot_reserve)
        except ValueError as err:
            raise exceptions.InvalidConfiguration(
                details="invalid value for snapshotReserve: %s" % snapshot_reserve
            ) from err
    if snapshot_policy == "none":
        return 0
    return NUMERICAL_VALUE_NOT_SET


def check_volume_size_limits(requested_size: int, config) -> Optional[int]:
    """Enforce limitVolumeSize.

    Returns:
        The limit in bytes, or None when no limit is configured

    Raises:
        VolumeSizeError: If the request exceeds the limit
        InvalidConfiguration: If the limit cannot be parsed
    """
    if not config.limit_volume_size:
        return None

    try:
        limit = utils.convert_size_to_bytes(config.limit_volume_size)
    except ValueError as err:
        raise exceptions.InvalidConfiguration(
            details="error parsing limitVolumeSize: %s" % err
        ) from err

    if requested_size > limit:
        raise exceptions.VolumeSizeError(
            details="requested size: %d > the size limit: %d" % (requested_size, limit)
        )
    return limit


def resize_validation(
    name: str,
    size_bytes: int,
    volume_exists: Callable[[str], bool],
    volume_size: Callable[[str], int],
) -> int:
    """Check that a volume exists and is not being shrunk.

    Returns:
        The current size in bytes

    Raises:
        VolumeNotFound: If the volume does not exist
        VolumeSizeError: If the requested size is smaller than the current one
    """
    try:
        exists = volume_exists(name)
    except exceptions.OntapStorageException as err:
        raise exceptions.VolumeError(
            volume_name=name, details="error checking for existing volume: %s" % err
        ) from err
    if not exists:
        raise exceptions.VolumeNotFound(volume_name=name)

    try:
        current_size = int(volume_size(name))
    except exceptions.OntapStorageException as err:
        raise exceptions.VolumeError(
            volume_name=name, details="error occurred when checking volume size: %s" % err
        ) from err

    if size_bytes < current_size:
        raise exceptions.VolumeSizeError(
            details="requested size %d is less than existing volume size %d"
            % (size_bytes, current_size)
        )
    return current_size
