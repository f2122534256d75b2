"""Utility functions and helpers for xui-sync.

This module provides common utilities used across the service including:
- Time helpers (epoch milliseconds, day lengths)
- Listen address and tag helpers
- Expiry state helpers for the first-use countdown
- Engine response envelope validation
"""

import enum
import logging
from datetime import UTC, datetime
from typing import TypeAlias, Union, Dict, Any, List

from xui_sync.errors import EngineError

JsonType: TypeAlias = Union[Dict[Any, Any], List[Any]]

DAY_MS = 86_400_000
ANY_ADDRESSES = frozenset({"", "0.0.0.0", "::", "::0"})

logger = logging.getLogger(__name__)


def now_millis() -> int:
    """Return the current UNIX time in milliseconds."""
    return int(datetime.now(UTC).timestamp() * 1000)


def is_any_address(listen: str | None) -> bool:
    """Check whether a listen address binds every interface.

    Args:
        listen: The listen address of an inbound.

    Returns:
        True for an empty address, 0.0.0.0, :: or ::0.

    Examples:
        >>> is_any_address("")
        True
        >>> is_any_address("127.0.0.1")
        False
    """
    return (listen or "") in ANY_ADDRESSES


def listens_collide(a: str | None, b: str | None) -> bool:
    """Check whether two listen addresses on the same port collide."""
    if is_any_address(a) or is_any_address(b):
        return True
    return a == b


def make_tag(listen: str | None, port: int) -> str:
    """Derive the engine tag for an inbound from its listen address and port.

    Examples:
        >>> make_tag("", 443)
        'inbound-443'
        >>> make_tag("10.0.0.1", 443)
        'inbound-10.0.0.1:443'
    """
    if is_any_address(listen):
        return f"inbound-{port}"
    return f"inbound-{listen}:{port}"


class ExpiryKind(enum.Enum):
    """How an ``expiryTime`` value is to be read."""

    NEVER = "never"
    PENDING = "pending"  # countdown starts on first traffic
    ABSOLUTE = "absolute"


def expiry_kind(expiry_time: int) -> ExpiryKind:
    if expiry_time == 0:
        return ExpiryKind.NEVER
    if expiry_time < 0:
        return ExpiryKind.PENDING
    return ExpiryKind.ABSOLUTE


def activate_expiry(expiry_time: int, now: int) -> int:
    """Turn a pending countdown into an absolute deadline.

    A negative ``expiryTime`` holds the countdown length in milliseconds.
    Absolute and never-expiring values are returned unchanged.

    Args:
        expiry_time: The stored expiry value.
        now: Current time in epoch milliseconds.

    Returns:
        The absolute expiry time in epoch milliseconds.

    Examples:
        >>> activate_expiry(-2 * DAY_MS, 1_000)
        172801000
        >>> activate_expiry(5_000, 1_000)
        5000
    """
    if expiry_kind(expiry_time) is not ExpiryKind.PENDING:
        return expiry_time
    return now - expiry_time


def next_renewal(expiry_time: int, reset_days: int, now: int) -> int:
    """Advance an expiry time by whole reset periods until it lies in the future.

    Args:
        expiry_time: The passed expiry time in epoch milliseconds.
        reset_days: The renewal period in days, must be positive.
        now: Current time in epoch milliseconds.

    Returns:
        The first ``expiry_time + k * reset_days`` strictly after ``now``.
    """
    if reset_days <= 0:
        raise ValueError("reset period must be positive")
    if expiry_time > now:
        return expiry_time
    period = reset_days * DAY_MS
    periods = (now - expiry_time) // period + 1
    return expiry_time + periods * period


def check_response_validity(response: JsonType) -> str:
    """Validate an engine control API response envelope.

    Args:
        response: The decoded JSON body.

    Returns:
        str: "OK" if the call succeeded, "ERROR" otherwise.

    Raises:
        EngineError: If the body is not a ``success``/``msg``/``obj`` envelope.

    Examples:
        >>> check_response_validity({"success": True, "msg": "", "obj": None})
        'OK'
    """
    if isinstance(response, dict) and {"success", "msg"} <= response.keys():
        if response["success"]:
            return "OK"
        logger.debug("Unsuccessful engine call: %s", response["msg"])
        return "ERROR"
    raise EngineError(f"Unexpected engine response: {response!r}")
