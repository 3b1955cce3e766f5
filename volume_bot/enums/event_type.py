from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    """Events published to session subscribers."""

    STATUS_UPDATE = "status_update"
    TRADE_EXECUTED = "trade_executed"
    SESSION_STARTED = "session_started"
    SESSION_STOPPED = "session_stopped"
    EMERGENCY_STOP = "emergency_stop"
    RULE_TRIGGERED = "rule_triggered"
    ERROR = "error"


class StreamEventType(str, Enum):
    """Events emitted by the real-time feed client."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    TRANSACTION = "transaction"
    PRICE_CHANGE = "price_change"
    BALANCE_CHANGE = "balance_change"
    ERROR = "error"


class TriggerType(str, Enum):
    """One-shot risk triggers, in evaluation priority order."""

    EMERGENCY_STOP = "emergency_stop"
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"
    TAKE_PROFIT = "take_profit"
