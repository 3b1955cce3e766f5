"""
Client for the external wallet custody service.

Key material never leaves the custody service: the engine only receives a
remote signer bound to one wallet, which forwards serialized transactions to
be signed and submitted there. Resolution fails closed: anything other than
an explicit, matching ownership answer yields ``None``.
"""

from __future__ import annotations

import base64
import os
from typing import List, Optional

import requests

from volume_bot.models.plan import WalletRecord
from volume_bot.exceptions import ExecutionError
from volume_bot.utils.logger import logger_manager, log_function

logger = logger_manager.setup_logger(__name__)

CUSTODY_URL          = os.getenv("CUSTODY_URL", "http://127.0.0.1:8700").rstrip("/")
CUSTODY_TOKEN        = os.getenv("CUSTODY_TOKEN", "")
CUSTODY_TIMEOUT_SECS = float(os.getenv("CUSTODY_TIMEOUT_SECS", "10"))


class RemoteSigner:
    def __init__(self, http: requests.Session, base_url: str, wallet_id: str, public_key: str,
                 session_id: str, timeout: float = CUSTODY_TIMEOUT_SECS):
        self.http = http
        self.base_url = base_url
        self.wallet_id = wallet_id
        self.public_key = public_key
        self.session_id = session_id
        self.timeout = timeout

    def _post(self, path: str, payload: dict) -> str:
        url = f"{self.base_url}/wallets/{self.wallet_id}/{path}"
        try:
            r = self.http.post(url, json={**payload, "session_id": self.session_id}, timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as e:
            raise ExecutionError(f"Custodia rechazó {path} para {self.public_key[:8]}…: {e}") from e
        signature = (r.json() or {}).get("signature")
        if not signature:
            raise ExecutionError(f"Custodia no devolvió firma ({path})")
        return signature

    def sign_and_send(self, tx_bytes: bytes) -> str:
        return self._post("sign-and-send", {"transaction": base64.b64encode(tx_bytes).decode()})

    def transfer(self, destination: str, lamports: int) -> str:
        return self._post("transfer", {"destination": destination, "lamports": int(lamports)})

    def __repr__(self) -> str:
        return f"RemoteSigner({self.public_key[:8]}…)"


class HttpWalletCustody:
    def __init__(self, base_url: str = CUSTODY_URL, token: str = CUSTODY_TOKEN,
                 session: requests.Session | None = None, timeout: float = CUSTODY_TIMEOUT_SECS):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()
        if token:
            self.http.headers["Authorization"] = f"Bearer {token}"

    @log_function
    def resolve(self, wallet_id: str, user_id: str, session_id: str) -> Optional[RemoteSigner]:
        try:
            r = self.http.get(
                f"{self.base_url}/wallets/{wallet_id}",
                params={"user_id": user_id, "session_id": session_id},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Custodia no disponible para wallet {wallet_id}: {e}")
            return None
        if r.status_code != 200:
            logger.warning(f"Wallet {wallet_id} no autorizada (HTTP {r.status_code})")
            return None
        try:
            data = r.json()
        except ValueError as e:
            logger.warning(f"Respuesta de custodia ilegible para wallet {wallet_id}: {e}")
            return None
        if not isinstance(data, dict) or data.get("user_id") != user_id or not data.get("public_key"):
            logger.warning(f"Wallet {wallet_id} no pertenece a {user_id}")
            return None
        return RemoteSigner(self.http, self.base_url, wallet_id, data["public_key"], session_id, self.timeout)

    @log_function
    def list_wallets(self, user_id: str, limit: int = 50) -> List[WalletRecord]:
        r = self.http.get(f"{self.base_url}/wallets", params={"user_id": user_id, "limit": limit},
                          timeout=self.timeout)
        r.raise_for_status()
        out: List[WalletRecord] = []
        for w in r.json() or []:
            if w.get("user_id") != user_id:
                continue
            out.append(WalletRecord(id=str(w["id"]), user_id=user_id, public_key=w["public_key"],
                                    label=w.get("label")))
        return out
