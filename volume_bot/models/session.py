"""
Session and per-(user, token) settings models.

``VolumeSession`` mirrors one row of the ``volume_sessions`` table and is
mutated only by the session manager. ``VolumeBotSettings`` is the owner's
editable configuration; a snapshot is taken at session start and never
changes while cycles run.
"""

from __future__ import annotations

import time
import uuid
from typing import Optional

from pydantic import BaseModel, Field

from volume_bot.enums.session_status import SessionStatus
from volume_bot.enums.strategy import Platform, Strategy


def _now() -> int:
    return int(time.time())


class VolumeBotSettings(BaseModel):
    user_id: str
    token_mint: str

    strategy: Strategy = Strategy.DBPM
    target_volume_sol: float = 1.0
    min_tx_sol: float = 0.01
    max_tx_sol: float = 0.1
    trade_interval_ms: int = 5000
    buy_pressure_percent: float = 70
    active_wallet_count: int = 3
    wallet_rotation_mode: str = "random"  # random | sequential

    emergency_stop_enabled: bool = True
    min_sol_balance: float = 0.05
    max_session_loss_sol: float = 0.5
    max_price_drop_percent: float = 20

    smart_profit_enabled: bool = False
    take_profit_percent: float = 10
    trailing_stop_percent: float = 5

    randomize_timing: bool = True
    randomize_amounts: bool = True
    amount_variance_percent: float = 20

    use_jito: bool = True
    priority_fee_mode: str = "medium"
    platform: Platform = Platform.PUMPFUN
    slippage_bps: int = 100

    is_active: bool = False
    auto_restart: bool = False
    updated_at: int = Field(default_factory=_now)


class VolumeSession(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    token_mint: str
    target_volume: float
    strategy: Strategy = Strategy.DBPM
    status: SessionStatus = SessionStatus.PENDING

    executed_volume: float = 0.0
    trades_count: int = 0
    buy_count: int = 0
    sell_count: int = 0
    fees_paid: float = 0.0
    pnl: float = 0.0

    entry_price: Optional[float] = None
    highest_price: Optional[float] = None
    lowest_price: Optional[float] = None

    error_message: Optional[str] = None
    stop_reason: Optional[str] = None

    created_at: int = Field(default_factory=_now)
    started_at: Optional[int] = None
    stopped_at: Optional[int] = None
    updated_at: int = Field(default_factory=_now)

    @property
    def progress_percent(self) -> float:
        if self.target_volume <= 0:
            return 100.0
        return min(100.0, self.executed_volume / self.target_volume * 100)
