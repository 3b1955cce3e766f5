"""
Single source of truth for "does this token still trade on the bonding-curve
launchpad, or has it migrated to an AMM pool reachable via the aggregator?".
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from volume_bot.enums.strategy import Platform

BONDING_DEX_ID = "pumpfun"
BONDING_URL_HINT = "pump.fun"
BONDING_MINT_SUFFIX = "pump"
MIGRATION_PROGRESS = 100.0


class PlatformDetector:
    def is_bonding_curve_token(self, token_mint: str, pair: Optional[Mapping[str, Any]] = None) -> bool:
        """Token nacido en el launchpad (haya migrado o no)."""
        pair = pair or {}
        if pair.get("dexId") == BONDING_DEX_ID:
            return True
        if BONDING_URL_HINT in str(pair.get("url") or ""):
            return True
        return token_mint.endswith(BONDING_MINT_SUFFIX)

    def is_migrated(self, token_mint: str, pair: Optional[Mapping[str, Any]] = None) -> bool:
        pair = pair or {}
        if pair.get("migrationDetected") or pair.get("complete"):
            return True
        progress = pair.get("bondingCurveProgress")
        if progress is not None and float(progress) >= MIGRATION_PROGRESS:
            return True
        dex_id = pair.get("dexId")
        # token del launchpad cotizando ya en otro dex
        return bool(dex_id) and dex_id != BONDING_DEX_ID and self.is_bonding_curve_token(token_mint, pair)

    def resolve_platform(self, token_mint: str, pair: Optional[Mapping[str, Any]] = None) -> Platform:
        if self.is_migrated(token_mint, pair):
            return Platform.JUPITER
        if self.is_bonding_curve_token(token_mint, pair):
            return Platform.PUMPFUN
        return Platform.JUPITER
