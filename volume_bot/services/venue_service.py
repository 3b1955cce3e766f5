from __future__ import annotations

import base64
import os
import uuid
from typing import Dict

import requests

from volume_bot.enums.strategy import Platform
from volume_bot.exceptions import ExecutionError, ValidationError
from volume_bot.services.ports import Signer, VenueAdapter
from volume_bot.utils.logger import logger_manager, log_function

logger = logger_manager.setup_logger(__name__)

# ---------- ENV ----------
PUMPPORTAL_TRADE_URL = os.getenv("PUMPPORTAL_TRADE_URL", "https://pumpportal.fun/api/trade-local")
JUPITER_API_URL      = os.getenv("JUPITER_API_URL", "https://quote-api.jup.ag/v6").rstrip("/")
SOL_MINT             = "So11111111111111111111111111111111111111112"

PUMP_PRIORITY_FEE      = float(os.getenv("PUMP_PRIORITY_FEE", "0.003"))      # SOL
PUMP_SLIPPAGE_PERCENT  = float(os.getenv("PUMP_SLIPPAGE_PERCENT", "30"))     # %
JUPITER_PRIORITY_LAMPORTS = int(os.getenv("JUPITER_PRIORITY_LAMPORTS", "100000"))
VENUE_TIMEOUT_SECS     = float(os.getenv("VENUE_TIMEOUT_SECS", "20"))
DRY_RUN                = os.getenv("DRY_RUN", "true").lower() == "true"

LAMPORTS_PER_SOL = 1_000_000_000


def _dry_signature(action: str, token_mint: str) -> str:
    return f"DRY_RUN-{action}-{token_mint[:8]}-{uuid.uuid4().hex[:16]}"


class BondingCurveVenue:
    """
    Compra/venta en la curva de bonding vía PumpPortal (trade-local).
    La API devuelve la transacción serializada sin firmar; firma y envío
    los hace el firmante de custodia.
    """

    def __init__(self, session: requests.Session | None = None, dry_run: bool | None = None,
                 priority_fee: float = PUMP_PRIORITY_FEE, slippage_percent: float = PUMP_SLIPPAGE_PERCENT):
        self.http = session or requests.Session()
        self.dry_run = DRY_RUN if dry_run is None else dry_run
        self.priority_fee = priority_fee
        self.slippage_percent = slippage_percent

    def _trade(self, signer: Signer, action: str, token_mint: str, amount: float, in_sol: bool) -> str:
        if self.dry_run:
            logger.info(f"[DRY_RUN] pump {action} {amount} {'SOL' if in_sol else 'tokens'} {token_mint[:8]}…")
            return _dry_signature(action, token_mint)
        payload = {
            "publicKey": signer.public_key,
            "action": action,
            "mint": token_mint,
            "denominatedInSol": "true" if in_sol else "false",
            "amount": amount,
            "slippage": self.slippage_percent,
            "priorityFee": self.priority_fee,
            "pool": "pump",
        }
        try:
            r = self.http.post(PUMPPORTAL_TRADE_URL, json=payload, timeout=VENUE_TIMEOUT_SECS)
        except requests.RequestException as e:
            raise ExecutionError(f"PumpPortal no responde: {e}") from e
        if r.status_code != 200:
            raise ExecutionError(f"PumpPortal API error: {r.status_code} - {r.text[:200]}")
        signature = signer.sign_and_send(r.content)
        logger.info(f"pump {action} confirmada {signature[:8]}… ({token_mint[:8]}…)")
        return signature

    @log_function
    def buy(self, signer: Signer, token_mint: str, amount_sol: float, slippage_bps: int) -> str:
        # la curva usa su propio slippage en %, slippage_bps no aplica
        return self._trade(signer, "buy", token_mint, amount_sol, in_sol=True)

    @log_function
    def sell(self, signer: Signer, token_mint: str, token_amount: float, slippage_bps: int,
             decimals: int = 6) -> str:
        return self._trade(signer, "sell", token_mint, token_amount, in_sol=False)


class AggregatorVenue:
    """Swaps vía Jupiter: quote → swap → firma del firmante de custodia."""

    def __init__(self, session: requests.Session | None = None, dry_run: bool | None = None,
                 priority_lamports: int = JUPITER_PRIORITY_LAMPORTS):
        self.http = session or requests.Session()
        self.dry_run = DRY_RUN if dry_run is None else dry_run
        self.priority_lamports = priority_lamports

    def _quote(self, input_mint: str, output_mint: str, raw_amount: int, slippage_bps: int) -> Dict:
        try:
            r = self.http.get(f"{JUPITER_API_URL}/quote", params={
                "inputMint": input_mint,
                "outputMint": output_mint,
                "amount": raw_amount,
                "slippageBps": slippage_bps,
            }, timeout=VENUE_TIMEOUT_SECS)
        except requests.RequestException as e:
            raise ExecutionError(f"Jupiter quote no responde: {e}") from e
        if r.status_code != 200:
            raise ExecutionError(f"Jupiter quote failed: {r.status_code}")
        return r.json()

    def _swap(self, signer: Signer, quote: Dict) -> str:
        try:
            r = self.http.post(f"{JUPITER_API_URL}/swap", json={
                "quoteResponse": quote,
                "userPublicKey": signer.public_key,
                "wrapAndUnwrapSol": True,
                "dynamicComputeUnitLimit": True,
                "prioritizationFeeLamports": self.priority_lamports,
            }, timeout=VENUE_TIMEOUT_SECS)
        except requests.RequestException as e:
            raise ExecutionError(f"Jupiter swap no responde: {e}") from e
        if r.status_code != 200:
            raise ExecutionError(f"Jupiter swap failed: {r.status_code}")
        tx_b64 = r.json().get("swapTransaction")
        if not tx_b64:
            raise ExecutionError("Jupiter no devolvió swapTransaction")
        return signer.sign_and_send(base64.b64decode(tx_b64))

    @log_function
    def buy(self, signer: Signer, token_mint: str, amount_sol: float, slippage_bps: int) -> str:
        lamports = int(amount_sol * LAMPORTS_PER_SOL)
        if lamports <= 0:
            raise ExecutionError(f"Importe de compra demasiado pequeño: {amount_sol} SOL")
        if self.dry_run:
            logger.info(f"[DRY_RUN] jupiter buy {amount_sol} SOL {token_mint[:8]}…")
            return _dry_signature("buy", token_mint)
        quote = self._quote(SOL_MINT, token_mint, lamports, slippage_bps)
        return self._swap(signer, quote)

    @log_function
    def sell(self, signer: Signer, token_mint: str, token_amount: float, slippage_bps: int,
             decimals: int = 6) -> str:
        raw = int(token_amount * (10 ** decimals))
        if raw <= 0:
            raise ExecutionError(f"Cantidad de venta demasiado pequeña: {token_amount}")
        if self.dry_run:
            logger.info(f"[DRY_RUN] jupiter sell {token_amount} tokens {token_mint[:8]}…")
            return _dry_signature("sell", token_mint)
        quote = self._quote(token_mint, SOL_MINT, raw, slippage_bps)
        return self._swap(signer, quote)


def build_venues(session: requests.Session | None = None, dry_run: bool | None = None) -> Dict[Platform, VenueAdapter]:
    http = session or requests.Session()
    return {
        Platform.PUMPFUN: BondingCurveVenue(session=http, dry_run=dry_run),
        Platform.JUPITER: AggregatorVenue(session=http, dry_run=dry_run),
    }


def venue_for(venues: Dict[Platform, VenueAdapter], platform: Platform) -> VenueAdapter:
    try:
        return venues[Platform(platform)]
    except (KeyError, ValueError):
        raise ValidationError(f"Plataforma sin venue configurado: {platform}")
