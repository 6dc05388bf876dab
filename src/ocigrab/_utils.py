"""
Utility functions for ocigrab.

These functions are not part of the public API and may change without notice.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from typing import Any


def sleep_with_jitter(
    seconds: float,
    jitter_factor: float = 0.1,
    sleep: Callable[[float], Any] = time.sleep,
) -> float:
    """
    Sleep for the given duration with random jitter.

    Adds random variation to sleep duration so that several processes started
    together do not hit the API in lockstep.

    Args:
        seconds: Base sleep duration in seconds.
        jitter_factor: Maximum percentage variation (default: 10%).
            For example, 0.1 means sleep time varies by +/- 10%.
        sleep: Function performing the actual wait. Defaults to time.sleep;
            the launch loop passes its cancellable wait instead.

    Returns:
        The duration actually requested from `sleep`.

    Example:
        >>> sleep_with_jitter(10.0)  # Sleeps between 9.0 and 11.0 seconds
    """
    jitter = random.uniform(-jitter_factor, jitter_factor)
    sleep_time = max(0.0, seconds * (1 + jitter))
    sleep(sleep_time)
    return sleep_time


def unescape_newlines(value: str) -> str:
    r"""
    Turn literal backslash-n sequences into real newlines.

    Example:
        >>> unescape_newlines("-----BEGIN KEY-----\\nabc\\n-----END KEY-----")
        '-----BEGIN KEY-----\nabc\n-----END KEY-----'
    """
    return value.replace("\\n", "\n")


def mask_secret(value: Any) -> str:
    """
    Mask a secret for display.

    Long secrets show their first and last 4 characters, short ones only a
    trailing third. Newlines are never shown.

    Examples:
        >>> mask_secret("aa:bb:cc:dd:ee:ff")
        'aa:b********e:ff'
        >>> mask_secret("short")
        '********t'
        >>> mask_secret("")
        ''
    """
    if value is None:
        return "None"

    secret = str(value).replace("\n", " ")
    if not secret:
        return ""
    if len(secret) >= 12:
        return f"{secret[:4]}********{secret[-4:]}"
    if len(secret) >= 3:
        visible = max(1, len(secret) // 3)
        return f"********{secret[-visible:]}"
    return "********"
