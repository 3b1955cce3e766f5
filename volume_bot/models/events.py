from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from volume_bot.enums.event_type import EventType, StreamEventType


class BotEvent(BaseModel):
    type: EventType
    session_id: Optional[str] = None
    token_mint: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


class ParsedTransaction(BaseModel):
    """Normalized transaction notification from the real-time feed."""

    signature: str
    slot: int = 0
    timestamp: float = Field(default_factory=time.time)
    type: str = "unknown"  # buy | sell | transfer | unknown
    accounts: List[str] = Field(default_factory=list)
    token_amount: float = 0.0
    sol_amount: float = 0.0
    price: Optional[float] = None
    wallet: Optional[str] = None
    is_own_wallet: bool = False


class StreamEvent(BaseModel):
    type: StreamEventType
    data: Dict[str, Any] = Field(default_factory=dict)
    transaction: Optional[ParsedTransaction] = None
    timestamp: float = Field(default_factory=time.time)
