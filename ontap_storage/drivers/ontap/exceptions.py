"""ONTAP Storage Driver Exceptions."""

import enum


class ErrorCode(enum.Enum):
    """Stable classification of failures reported by the appliance.

    Client implementations translate appliance-specific error numbers into
    one of these codes so callers can branch on them instead of on message
    text.
    """

    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    INITIATOR_ALREADY_PRESENT = "initiator_already_present"
    INITIATOR_NOT_PRESENT = "initiator_not_present"
    SNAPSHOT_BUSY = "snapshot_busy"
    JOB_TRACKING_FAILURE = "job_tracking_failure"
    INSUFFICIENT_PRIVILEGE = "insufficient_privilege"
    VOLUME_OFFLINE = "volume_offline"
    # The appliance gave up waiting on a job it was tracking
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class OntapStorageException(Exception):
    """Base exception for ONTAP driver errors."""

    message = "An unknown exception occurred."

    def __init__(self, message=None, **kwargs):
        """Initialize exception with optional custom message."""
        self.kwargs = kwargs
        if message:
            self.message = message
        super(OntapStorageException, self).__init__(self.message % kwargs)


class OntapAPIError(OntapStorageException):
    """A classified failure returned by the remote management API."""

    message = "ONTAP API error (%(code)s): %(details)s"

    def __init__(self, code=ErrorCode.UNKNOWN, details="", **kwargs):
        self.code = code
        self.details = details
        super(OntapAPIError, self).__init__(code=code.value, details=details, **kwargs)

    def is_code(self, *codes):
        return self.code in codes


class InvalidConfiguration(OntapStorageException):
    """Malformed driver configuration or request. Never retried."""

    message = "Invalid configuration: %(details)s"


class VolumeNotFound(OntapStorageException):
    message = "Volume %(volume_name)s does not exist"


class VolumeAlreadyExists(OntapStorageException):
    message = "Volume %(volume_name)s already exists"


class VolumeError(OntapStorageException):
    message = "Volume %(volume_name)s: %(details)s"


class VolumeSizeError(OntapStorageException):
    message = "Invalid volume size: %(details)s"


class SnapshotNotFound(OntapStorageException):
    """The source snapshot of a clone is genuinely absent."""

    message = "Snapshot %(snapshot_name)s does not exist in volume %(volume_name)s"


class SnapshotBusy(OntapStorageException):
    """Snapshot has dependent clones; retry once a split completes."""

    message = "Snapshot %(snapshot_name)s of volume %(volume_name)s is busy: %(details)s"


class SnapshotError(OntapStorageException):
    message = "Snapshot operation failed: %(details)s"


class CloneError(OntapStorageException):
    message = "Error creating clone %(clone_name)s: %(details)s"


class CloneTimeout(CloneError):
    """Bounded wait for an asynchronous clone job was exceeded."""

    message = "Clone %(clone_name)s did not complete within %(timeout)s seconds"


class ExportPolicyError(OntapStorageException):
    message = "Export policy %(policy_name)s: %(details)s"


class InitiatorGroupError(OntapStorageException):
    message = "Initiator group %(igroup_name)s: %(details)s"


class ChapError(OntapStorageException):
    message = "CHAP error: %(details)s"


class ChapSecretGenerationError(ChapError):
    """Too few usable characters survived; callers may retry."""

    message = "Could not generate CHAP secret: %(details)s"


class SANError(OntapStorageException):
    message = "SAN error: %(details)s"


class PoolDiscoveryError(OntapStorageException):
    message = "Could not get storage pools from array: %(details)s"


class StoragePoolNotFound(OntapStorageException):
    message = "Could not find pool %(pool_name)s"


class BackendIneligible(OntapStorageException):
    """No pool on this backend can host the request.

    This is an eligibility failure, not a transient one: the orchestrator
    should try another backend instead of retrying this one.
    """

    message = "Backend cannot satisfy volume %(volume_name)s: %(details)s"


class AggregateLimitExceeded(OntapStorageException):
    message = "Aggregate %(aggregate)s: %(details)s"


class AggregateLimitError(OntapStorageException):
    """Aggregate limits could not be evaluated."""

    message = "Cannot check aggregate provisioning limits: %(details)s"
