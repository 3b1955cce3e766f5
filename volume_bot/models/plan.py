"""
Allocation planner data structures.

Allocation and transaction entries are built fresh every cycle and thrown
away once the batch has been executed.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from volume_bot.enums.strategy import Strategy, TradeIntent, WalletRole


class WalletRecord(BaseModel):
    """Wallet reference handed over by the custody service (no key material)."""

    id: str
    user_id: str
    public_key: str
    label: Optional[str] = None


class PlanRules(BaseModel):
    initial_wallet_count: int = 5
    buy_pressure_volume: float = 0.5
    stabilization_threshold: float = 5
    arbitrage_profit_floor: float = 0.2
    global_stop_loss: float = 15
    auto_execute: bool = True
    # métricas opcionales para las reglas de beneficio/pérdida
    expected_profit: Optional[float] = None
    expected_loss: Optional[float] = None


class AllocationEntry(BaseModel):
    wallet: WalletRecord
    role: WalletRole
    amount: float
    concurrency: bool = False


class TransactionEntry(BaseModel):
    wallet: WalletRecord
    role: WalletRole
    intent: TradeIntent
    volume: float
    concurrency: bool = False


class PlanSummary(BaseModel):
    user_id: str
    token_mint: str
    strategy: Strategy
    total_volume: float
    wallet_count: int
    roles: Dict[str, int] = Field(default_factory=dict)
    rules: PlanRules


class AllocationPlan(BaseModel):
    success: bool
    strategy: Optional[Strategy] = None
    allocation: List[AllocationEntry] = Field(default_factory=list)
    transactions: List[TransactionEntry] = Field(default_factory=list)
    summary: Optional[PlanSummary] = None
    error: Optional[str] = None  # rule_violation | allocation_failed
    message: Optional[str] = None
    violations: List[str] = Field(default_factory=list)


class ExecutionPlan(BaseModel):
    """Compact view of a plan for callers that only need totals."""

    plan_id: str
    strategy: Strategy
    wallet_count: int
    total_buy_volume: float
    total_sell_volume: float
    created_at: int
    expires_at: int
