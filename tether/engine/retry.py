"""Retry and repair-escalation state for one provider request.

Two independent budgets:

- Tool-ordering rejections (a 4xx whose body says the tool sequence is
  malformed) escalate the repair level: resend a freshly sanitized history,
  then a history with every tool interaction stripped, then give up.
- Transport failures (network errors, timeouts, 429, 5xx) are retried a
  fixed number of times after a fixed delay, with no change to content.

The controller holds no I/O. ProviderClient drives it and does the sleeping.
"""

from __future__ import annotations

import logging
from enum import IntEnum

logger = logging.getLogger(__name__)

ORDERING_SIGNATURES = (
    "tool call result does not follow tool call",
    "tool_call_id",
)


class RepairLevel(IntEnum):
    SANITIZE = 0
    STRIP_TOOLS = 1
    GIVE_UP = 2


def is_tool_ordering_error(status: int, body: str) -> bool:
    """True when a 4xx response complains about tool call/result ordering."""
    if not 400 <= status < 500:
        return False
    text = (body or "").lower()
    if any(sig in text for sig in ORDERING_SIGNATURES):
        return True
    return "invalid_request_error" in text and "tool" in text


def is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


class RetryController:
    """Per-request escalation state. Create a fresh one for every send."""

    def __init__(self, max_transport_retries: int = 2, backoff_seconds: float = 1.0):
        self.max_transport_retries = max_transport_retries
        self.backoff_seconds = backoff_seconds
        self.level = RepairLevel.SANITIZE
        self.ordering_failures = 0
        self.transport_failures = 0
        self.attempts = 0

    @property
    def exhausted(self) -> bool:
        return self.level == RepairLevel.GIVE_UP

    def record_attempt(self) -> None:
        self.attempts += 1

    def on_ordering_error(self) -> RepairLevel:
        """Escalate after a tool-ordering rejection and return the new level.

        The first rejection resends at SANITIZE (re-run from scratch on the
        full history), the second moves to STRIP_TOOLS, the third to GIVE_UP.
        """
        self.ordering_failures += 1
        if self.ordering_failures == 1:
            self.level = RepairLevel.SANITIZE
        elif self.ordering_failures == 2:
            self.level = RepairLevel.STRIP_TOOLS
        else:
            self.level = RepairLevel.GIVE_UP
        logger.warning(
            "Provider rejected tool ordering (failure %d), repair level now %s",
            self.ordering_failures,
            self.level.name,
        )
        return self.level

    def on_transport_error(self) -> float | None:
        """Record a transport failure.

        Returns the delay before the next attempt, or None when the retry
        budget is spent and the error is terminal.
        """
        self.transport_failures += 1
        if self.transport_failures > self.max_transport_retries:
            return None
        return self.backoff_seconds
