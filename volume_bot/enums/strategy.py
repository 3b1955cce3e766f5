"""
Market classification enums: phase, protocol state and trading strategy.

- DBPM: bullish momentum strategy (entry/exit rotation).
- PLD: defensive liquidity strategy (balanced buy/sell).
- CMWA: arbitrage strategy (paired buy/sell wallets).
"""

from __future__ import annotations

from enum import Enum


class Strategy(str, Enum):
    DBPM = "DBPM"
    PLD = "PLD"
    CMWA = "CMWA"


class Phase(str, Enum):
    BONDING_CURVE = "Bonding Curve"
    AMM_POOL = "AMM Pool"


class ProtocolState(str, Enum):
    BUILDING_MOMENTUM = "Building Momentum"
    STABILIZING_PRICE = "Stabilizing Price"
    CAPTURING_SPREAD = "Capturing Spread"


class TradeIntent(str, Enum):
    BUY = "buy"
    SELL = "sell"


class WalletRole(str, Enum):
    ENTRY = "entry"
    EXIT = "exit"
    LIQUIDITY = "liquidity"
    ARBITRAGE_BUY = "arbitrage_buy"
    ARBITRAGE_SELL = "arbitrage_sell"


class Platform(str, Enum):
    """Execution venue: bonding-curve launchpad or swap aggregator."""

    PUMPFUN = "pumpfun"
    JUPITER = "jupiter"
    AUTO = "auto"
