"""Bidirectional CHAP validation for the SVM's default iSCSI initiator."""

import base64
import enum
import secrets

from oslo_log import log as logging

from . import exceptions
from .models import ChapCredentials

LOG = logging.getLogger(__name__)

CHAP_SECRET_LENGTH = 16
_CHAP_RANDOM_BYTES = 256


class AuthType(enum.Enum):
    NONE = "none"
    CHAP = "CHAP"
    DENY = "deny"
    UNRECOGNIZED = "unrecognized"


def get_default_auth_type(default_auth) -> AuthType:
    """Classify the default initiator's auth type, ignoring case."""
    auth_type = (default_auth.auth_type or "").strip().lower()
    for candidate in (AuthType.NONE, AuthType.CHAP, AuthType.DENY):
        if auth_type == candidate.value.lower():
            return candidate
    return AuthType.UNRECOGNIZED


def credentials_from_config(config) -> ChapCredentials:
    return ChapCredentials(
        chap_username=config.chap_username,
        chap_initiator_secret=config.chap_initiator_secret,
        chap_target_username=config.chap_target_username,
        chap_target_initiator_secret=config.chap_target_initiator_secret,
    )


def validate_bidirectional_chap_credentials(default_auth, config) -> ChapCredentials:
    """Check that the configured CHAP credentials can be applied.

    Secrets cannot be read back from the appliance, so only usernames are
    compared when the default initiator already uses CHAP.

    Args:
        default_auth: DefaultAuth record read from the appliance
        config: Driver config holding the four CHAP fields

    Returns:
        The validated ChapCredentials

    Raises:
        ChapError: If the auth type is deny or unrecognized, a field is
            missing, or usernames differ from the appliance's
    """
    auth_type = get_default_auth_type(default_auth)
    if auth_type is AuthType.UNRECOGNIZED:
        raise exceptions.ChapError(
            details="default initiator's auth type '%s' is unsupported" % default_auth.auth_type
        )
    if auth_type is AuthType.DENY:
        raise exceptions.ChapError(details="default initiator's auth type is deny")

    credentials = credentials_from_config(config)
    missing = credentials.missing_fields()
    if missing:
        raise exceptions.ChapError(
            details="missing value for required field(s) %s" % ", ".join(missing)
        )

    if auth_type is AuthType.CHAP:
        if default_auth.user_name is None or default_auth.outbound_user_name is None:
            raise exceptions.ChapError(
                details="error checking default initiator's credentials"
            )
        if credentials.chap_username != default_auth.user_name:
            raise exceptions.ChapError(
                details="provided CHAP usernames do not match default initiator usernames"
            )
        if credentials.chap_target_username != default_auth.outbound_user_name:
            raise exceptions.ChapError(
                details="provided CHAP target usernames do not match default initiator usernames"
            )

    return credentials


def random_chap_string16() -> str:
    """Generate a 16 character CHAP secret.

    Raises:
        ChapSecretGenerationError: If too few characters survive stripping;
            callers may simply retry
    """
    encoded = base64.b64encode(secrets.token_bytes(_CHAP_RANDOM_BYTES)).decode("ascii")
    usable = "".join(c for c in encoded if c not in "+/=")
    if len(usable) < CHAP_SECRET_LENGTH:
        raise exceptions.ChapSecretGenerationError(
            details="only %d usable characters generated" % len(usable)
        )
    return usable[:CHAP_SECRET_LENGTH]
