"""
Error taxonomy for volume_bot.

Per-wallet failures are recorded on the execution record and never escape a
batch; a RuleViolation only aborts the current cycle; PersistenceError is
logged and does not roll back in-memory state.
"""

from __future__ import annotations

from typing import List


class VolumeBotError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(VolumeBotError):
    """Malformed input (planner arguments, settings, config)."""


class RuleViolation(VolumeBotError):
    """One or more safety rules rejected an allocation plan."""

    def __init__(self, violations: List[str]):
        self.violations = list(violations)
        super().__init__(f"Reglas violadas: {', '.join(self.violations)}")


class AuthorizationError(VolumeBotError):
    """Wallet not owned by the session's user."""


class ExecutionError(VolumeBotError):
    """Venue call failed: network, slippage, timeout..."""


class StalenessError(VolumeBotError):
    """Price data too old to act on."""


class PersistenceError(VolumeBotError):
    """Store read/write failed."""


class SessionStateError(VolumeBotError):
    """Illegal session transition (already running, already terminated...)."""
