"""Helpers shared by the ONTAP driver components."""

import ipaddress
import random
import re
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, TypeVar

from oslo_log import log as logging
from oslo_utils import units
import tenacity

from . import exceptions

LOG = logging.getLogger(__name__)

T = TypeVar("T")

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kKmMgGtTpPeE]?)(i?)[bB]?\s*$")

_DECIMAL_UNITS = {
    "": 1,
    "k": units.k,
    "m": units.M,
    "g": units.G,
    "t": units.T,
    "p": units.P,
    "e": units.E,
}

_BINARY_UNITS = {
    "k": units.Ki,
    "m": units.Mi,
    "g": units.Gi,
    "t": units.Ti,
    "p": units.Pi,
    "e": units.Ei,
}

_STORAGE_PREFIX_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def convert_size_to_bytes(size: str) -> int:
    """Convert a human readable size to a number of bytes.

    Decimal suffixes (``1G``, ``1GB``) are powers of 1000, binary suffixes
    (``1Gi``, ``1GiB``) powers of 1024. A bare number is taken as bytes.

    Args:
        size: Size string such as "1G", "10MiB" or "21474836480"

    Returns:
        Size in bytes

    Raises:
        ValueError: If the string cannot be parsed
    """
    match = _SIZE_RE.match(str(size))
    if not match:
        raise ValueError("invalid size value '%s'" % size)

    value, unit, binary = match.groups()
    unit = unit.lower()
    if binary:
        if not unit:
            raise ValueError("invalid size value '%s'" % size)
        multiplier = _BINARY_UNITS[unit]
    else:
        multiplier = _DECIMAL_UNITS[unit]
    return int(float(value) * multiplier)


def filter_ips_by_cidrs(ips: Iterable[str], cidrs: Iterable[str]) -> List[str]:
    """Return the addresses that fall inside at least one of the CIDRs.

    Raises:
        ValueError: If a CIDR is malformed
    """
    networks = [ipaddress.ip_network(cidr, strict=False) for cidr in cidrs]
    filtered = []
    for ip in ips:
        try:
            address = ipaddress.ip_address(ip.strip())
        except ValueError:
            LOG.debug("Ignoring unparseable address %s.", ip)
            continue
        if any(address.version == net.version and address in net for net in networks):
            filtered.append(ip)
    return filtered


def validate_cidrs(cidrs: Iterable[str]) -> None:
    """Raise InvalidConfiguration listing every malformed CIDR."""
    invalid = []
    for cidr in cidrs:
        try:
            ipaddress.ip_network(cidr, strict=False)
        except ValueError:
            invalid.append(cidr)
    if invalid:
        raise exceptions.InvalidConfiguration(
            details="invalid CIDR(s) in autoExportCIDRs: %s" % ", ".join(invalid)
        )


def validate_storage_prefix(storage_prefix: str) -> None:
    """Raise InvalidConfiguration unless the prefix is a valid volume name start."""
    if storage_prefix and not _STORAGE_PREFIX_RE.match(storage_prefix):
        raise exceptions.InvalidConfiguration(
            details=(
                "storage prefix may only contain letters/digits/underscore "
                "and must begin with letter or underscore"
            )
        )


def clean_backend_name(backend_name: str) -> str:
    backend_name = backend_name.replace("[", "").replace("]", "")
    return backend_name.replace(":", ".")


def pool_name(name: str, backend_name: str) -> str:
    """Name a pool uniquely across backends, e.g. ``nas1_pool_0``."""
    return "%s_%s" % (backend_name, name.replace("-", ""))


def get_internal_volume_name(storage_prefix: str, name: str) -> str:
    """Map an orchestrator volume name onto a valid appliance volume name."""
    internal = storage_prefix + name
    internal = internal.replace("-", "_").replace(".", "_")
    while "__" in internal:
        internal = internal.replace("__", "_")
    return internal


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with jitter, bounded by total elapsed time.

    Attributes:
        initial_interval: First wait in seconds
        multiplier: Growth factor between consecutive waits
        randomization_factor: Each wait is drawn uniformly from
            ``interval * (1 +/- randomization_factor)``
        max_elapsed_time: Total time budget in seconds
        max_interval: Optional cap on a single wait
    """

    initial_interval: float
    multiplier: float
    randomization_factor: float
    max_elapsed_time: float
    max_interval: Optional[float] = None

    def interval(self, attempt_number: int) -> float:
        interval = self.initial_interval * self.multiplier ** (attempt_number - 1)
        if self.max_interval is not None:
            interval = min(interval, self.max_interval)
        return interval

    def max_attempts(self) -> int:
        """Attempts that fit in the time budget when every wait is shortest.

        Bounds the loop even when the clock does not advance, e.g. with
        sleeping patched out.
        """
        attempts = 1
        elapsed = 0.0
        while True:
            elapsed += self.interval(attempts) * (1 - self.randomization_factor)
            if elapsed > self.max_elapsed_time:
                return attempts
            attempts += 1


class wait_exponential_jitter(tenacity.wait.wait_base):
    """Wait strategy following a :class:`BackoffPolicy`."""

    def __init__(self, policy: BackoffPolicy):
        self.policy = policy

    def __call__(self, retry_state):
        interval = self.policy.interval(retry_state.attempt_number)
        delta = self.policy.randomization_factor * interval
        wait = random.uniform(interval - delta, interval + delta)
        remaining = self.policy.max_elapsed_time - (retry_state.seconds_since_start or 0)
        return max(0.0, min(wait, remaining))


# Existence probe after a lost clone job
PROBE_BACKOFF = BackoffPolicy(
    initial_interval=1, multiplier=2, randomization_factor=0.1, max_elapsed_time=30
)

# Polling of asynchronous clone jobs
CLONE_JOB_BACKOFF = BackoffPolicy(
    initial_interval=1,
    multiplier=2,
    randomization_factor=0.1,
    max_elapsed_time=120,
    max_interval=15,
)


def _sleep(seconds):
    time.sleep(seconds)


def retry_with_backoff(
    func: Callable[[], T],
    retry_if: Callable[[BaseException], bool],
    policy: BackoffPolicy,
) -> T:
    """Call ``func`` until it succeeds or the policy's budget runs out.

    Args:
        func: Zero-argument callable
        retry_if: Predicate deciding whether an exception raised by ``func``
            is worth another attempt
        policy: Backoff policy bounding the retries

    Returns:
        The result of the first successful call

    Raises:
        The last exception raised by ``func`` once retries stop
    """
    retrying = tenacity.Retrying(
        sleep=_sleep,
        stop=(
            tenacity.stop_after_delay(policy.max_elapsed_time)
            | tenacity.stop_after_attempt(policy.max_attempts())
        ),
        wait=wait_exponential_jitter(policy),
        retry=tenacity.retry_if_exception(retry_if),
        before_sleep=tenacity.before_sleep_log(LOG, logging.DEBUG),
        reraise=True,
    )
    return retrying(func)
