# services/market_service.py
from __future__ import annotations

import os
from typing import Any, Dict, Optional

import requests

from volume_bot.services.platform_detector import PlatformDetector
from volume_bot.utils.logger import logger_manager, log_function

logger = logger_manager.setup_logger(__name__)

DEXSCREENER_URL = os.getenv("DEXSCREENER_URL", "https://api.dexscreener.com/latest/dex/tokens")
MARKET_TIMEOUT_SECS = float(os.getenv("MARKET_TIMEOUT_SECS", "8"))


class MarketService:
    """
    Precio y métricas de mercado de un token Solana vía DexScreener.
    Se queda con el par de mayor liquidez.
    """

    def __init__(self, detector: PlatformDetector | None = None, session: requests.Session | None = None):
        self.detector = detector or PlatformDetector()
        self.http = session or requests.Session()

    def _best_pair(self, token_mint: str) -> Optional[Dict[str, Any]]:
        r = self.http.get(f"{DEXSCREENER_URL}/{token_mint}", timeout=MARKET_TIMEOUT_SECS)
        r.raise_for_status()
        pairs = [p for p in (r.json().get("pairs") or []) if p.get("chainId", "solana") == "solana"]
        if not pairs:
            return None
        return max(pairs, key=lambda p: float((p.get("liquidity") or {}).get("usd") or 0))

    @log_function
    def get_price_native(self, token_mint: str) -> float | None:
        """Precio en SOL (priceNative) o None si no hay par."""
        try:
            pair = self._best_pair(token_mint)
        except requests.RequestException as e:
            logger.warning(f"DexScreener no responde para {token_mint}: {e}")
            return None
        if not pair:
            return None
        try:
            price = float(pair.get("priceNative"))
        except (TypeError, ValueError):
            return None
        return price if price > 0 else None

    @log_function
    def get_metrics(self, token_mint: str) -> Dict[str, Any]:
        """Payload de métricas en el formato que entiende el clasificador."""
        pair = self._best_pair(token_mint)
        if not pair:
            return {}
        change = pair.get("priceChange") or {}
        volume = pair.get("volume") or {}
        liquidity = pair.get("liquidity") or {}
        price_usd = float(pair.get("priceUsd") or 0)
        fdv = float(pair.get("fdv") or 0)
        return {
            "price": {
                "current": float(pair.get("priceNative") or 0),
                "change5m": float(change.get("m5") or 0),
                "change1h": float(change.get("h1") or 0),
            },
            "volume": {"vol5m": float(volume.get("m5") or 0)},
            "liquidity": {"sol": float(liquidity.get("quote") or 0)},
            "supply": {"circulating": fdv / price_usd if price_usd > 0 else 0},
            "holders": int(pair.get("holders") or 0),
            "migrationDetected": self.detector.is_migrated(token_mint, pair),
            "dexId": pair.get("dexId"),
        }
