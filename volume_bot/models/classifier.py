"""
Status classifier models: thresholds, per-token config, normalized metrics
snapshot and the derived status.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from volume_bot.enums.strategy import Phase, ProtocolState, Strategy
from volume_bot.models.plan import PlanRules


class ClassifierThresholds(BaseModel):
    momentum_change_pct: float = 5
    stabilization_drop_pct: float = -4
    lp_health_floor: float = 5
    volume_spike_multiplier: float = 1.5


class ClassifierConfig(BaseModel):
    user_id: Optional[str] = None
    wallet_group_id: Optional[str] = None
    rules: PlanRules = Field(default_factory=PlanRules)
    metrics_config: Dict[str, Any] = Field(default_factory=dict)
    force_bonding: bool = False
    force_amm: bool = False
    auto_execute: bool = True
    emit_interval_ms: int = 5000
    thresholds: ClassifierThresholds = Field(default_factory=ClassifierThresholds)


class PriceMetrics(BaseModel):
    current: float = 0.0
    change1m: float = 0.0
    change5m: float = 0.0
    change1h: float = 0.0


class VolumeMetrics(BaseModel):
    vol5m: float = 0.0


class LiquidityMetrics(BaseModel):
    sol: float = 0.0
    score: Optional[float] = None


class SupplyMetrics(BaseModel):
    circulating: float = 0.0


class MetricsSnapshot(BaseModel):
    price: PriceMetrics = Field(default_factory=PriceMetrics)
    volume: VolumeMetrics = Field(default_factory=VolumeMetrics)
    liquidity: LiquidityMetrics = Field(default_factory=LiquidityMetrics)
    supply: SupplyMetrics = Field(default_factory=SupplyMetrics)
    holders: int = 0
    migration_detected: bool = False


class ClassifierStatus(BaseModel):
    token_mint: str
    session_id: Optional[str] = None
    phase: Phase = Phase.BONDING_CURVE
    protocol_state: ProtocolState = ProtocolState.BUILDING_MOMENTUM
    strategy: Strategy = Strategy.DBPM
    metrics: Optional[MetricsSnapshot] = None
    config: ClassifierConfig = Field(default_factory=ClassifierConfig)
    emergency_stopped: bool = False
    timestamp: float = Field(default_factory=time.time)
