"""
Smart-profit (risk manager) settings and live state.
"""

from __future__ import annotations

import time
from typing import Optional

from pydantic import BaseModel, Field

from volume_bot.enums.event_type import TriggerType
from volume_bot.enums.strategy import Platform


class RiskSettings(BaseModel):
    enabled: bool = True

    take_profit_enabled: bool = True
    take_profit_percent: float = 50
    take_profit_sell_percent: float = 50

    stop_loss_enabled: bool = True
    stop_loss_percent: float = 20

    trailing_stop_enabled: bool = True
    trailing_stop_percent: float = 10
    trailing_stop_activation_percent: float = 20

    emergency_stop_enabled: bool = True
    emergency_stop_loss_percent: float = 50

    slippage_bps: int = 500
    platform: Platform = Platform.JUPITER


class RiskTriggers(BaseModel):
    take_profit: bool = False
    stop_loss: bool = False
    trailing_stop: bool = False
    emergency_stop: bool = False

    def fired(self, trigger: TriggerType) -> bool:
        return bool(getattr(self, trigger.value))

    def mark(self, trigger: TriggerType) -> None:
        setattr(self, trigger.value, True)


class RiskState(BaseModel):
    session_id: str
    token_mint: str
    user_id: str

    entry_price: float = 0.0
    position_tokens: float = 0.0
    position_cost: float = 0.0

    current_price: float = 0.0
    highest_price: float = 0.0
    lowest_price: float = 0.0
    profit_percent: float = 0.0
    trailing_stop_price: Optional[float] = None
    last_price_update: float = 0.0

    triggers: RiskTriggers = Field(default_factory=RiskTriggers)
    is_monitoring: bool = True
    last_execution_at: float = 0.0


class RiskExecution(BaseModel):
    session_id: str
    trigger: TriggerType
    price: float
    profit_percent: float
    sell_percent: float
    success: bool
    wallets: int = 0
    error: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
