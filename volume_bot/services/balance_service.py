from __future__ import annotations

import os
from time import sleep
from typing import Any, List, Optional

import requests

from volume_bot.exceptions import ExecutionError
from volume_bot.models.execution import TokenBalance
from volume_bot.utils.logger import logger_manager, log_function

logger = logger_manager.setup_logger(__name__)

# ---------- ENV ----------
# RPCs separados por comas para failover
_RPC_ENV = os.getenv("RPC_URLS") or os.getenv("RPC_URL") or "https://api.mainnet-beta.solana.com"
DEFAULT_RPC_URLS = [u.strip().rstrip("/") for u in _RPC_ENV.split(",") if u.strip()]

REQUEST_TIMEOUT_SECS = float(os.getenv("RPC_TIMEOUT_SECS", "15"))
RETRY_RPC_TIMES      = int(os.getenv("RPC_RETRIES", "3"))
RETRY_BACKOFF_SECS   = float(os.getenv("RPC_RETRY_BACKOFF_SECS", "0.4"))


class RpcBalanceService:
    """Saldos SPL por wallet vía JSON-RPC, con reintentos y failover entre RPCs."""

    def __init__(self, rpc_urls: Optional[List[str]] = None, session: requests.Session | None = None):
        self._rpc_urls = list(rpc_urls or DEFAULT_RPC_URLS)
        self._idx = 0
        self.http = session or requests.Session()
        self._req_id = 0

    def _rpc_call(self, method: str, params: list) -> Any:
        last_err: Optional[Exception] = None
        for attempt in range(1, RETRY_RPC_TIMES + 1):
            url = self._rpc_urls[self._idx % len(self._rpc_urls)]
            self._req_id += 1
            try:
                r = self.http.post(url, json={"jsonrpc": "2.0", "id": self._req_id, "method": method,
                                              "params": params}, timeout=REQUEST_TIMEOUT_SECS)
                r.raise_for_status()
                body = r.json()
                if body.get("error"):
                    raise ExecutionError(f"{method}: {body['error']}")
                return body.get("result")
            except (requests.RequestException, ValueError) as e:
                last_err = e
                logger.warning(f"RPC {method} falló en {url} (intento {attempt}/{RETRY_RPC_TIMES}): {e}")
                # siguiente RPC de la lista
                self._idx += 1
                sleep(RETRY_BACKOFF_SECS * attempt)
        raise ExecutionError(f"RPC {method} agotó reintentos: {last_err}")

    @log_function
    def token_balance(self, public_key: str, token_mint: str) -> TokenBalance:
        result = self._rpc_call("getTokenAccountsByOwner", [
            public_key,
            {"mint": token_mint},
            {"encoding": "jsonParsed", "commitment": "confirmed"},
        ])
        amount = 0.0
        decimals = 6
        for acc in (result or {}).get("value", []):
            info = acc.get("account", {}).get("data", {}).get("parsed", {}).get("info", {})
            token_amount = info.get("tokenAmount") or {}
            decimals = int(token_amount.get("decimals", decimals))
            amount += float(token_amount.get("uiAmount") or 0)
        return TokenBalance(amount=amount, decimals=decimals)

    @log_function
    def sol_balance(self, public_key: str) -> float:
        result = self._rpc_call("getBalance", [public_key, {"commitment": "confirmed"}])
        return float((result or {}).get("value", 0)) / 1e9
