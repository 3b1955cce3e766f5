from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from volume_bot.enums.strategy import Platform, TradeIntent, WalletRole


class ExecutionContext(BaseModel):
    """Who is executing a plan and where."""

    session_id: str
    user_id: str
    token_mint: str
    platform: Platform = Platform.PUMPFUN
    slippage_bps: int = 100
    referrer: Optional[str] = None
    token_decimals: Optional[int] = None


class ExecutionRecord(BaseModel):
    wallet_id: str
    public_key: str
    role: WalletRole
    intent: TradeIntent | str
    volume: float
    notional: Optional[float] = None   # SOL realmente movido; en ventas sold_tokens·precio
    price: Optional[float] = None
    concurrency: bool = False
    success: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    signature: Optional[str] = None
    sold_tokens: Optional[float] = None
    sold_all: bool = False
    dust_prevention: bool = False
    error: Optional[str] = None
    platform_fee: float = 0.0
    platform_fee_collected: Optional[bool] = None

    @property
    def outcome(self) -> str:
        if self.skipped:
            return "skipped"
        return "success" if self.success else "failed"


class ExecutionSummary(BaseModel):
    total: int = 0
    success: int = 0
    skipped: int = 0
    failed: int = 0
    sells_completed: int = 0
    buys_completed: int = 0
    wallets_with_no_tokens: int = 0
    total_sell_intents: int = 0
    all_wallets_empty: bool = False
    executed_volume: float = 0.0
    fees_collected: float = 0.0


class TokenBalance(BaseModel):
    amount: float
    decimals: int = 6


class FeeResult(BaseModel):
    success: bool
    fee_amount: float = 0.0
    referral_share: float = 0.0
    signature: Optional[str] = None
    error: Optional[str] = None
