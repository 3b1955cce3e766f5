"""
Real-time transaction/balance feed for one token and its wallet set.

Runs a websocket JSON-RPC subscription (``transactionSubscribe`` +
``accountSubscribe``) in a background daemon thread that owns its own
asyncio loop. Liveness is checked with application-level pings: if no
``pong`` arrives within ``pong_timeout`` the socket is closed and the
reconnect loop takes over, with exponential backoff capped at
``reconnect_max_delay`` and a bounded number of attempts.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

import websockets

from volume_bot.enums.event_type import StreamEventType
from volume_bot.models.events import ParsedTransaction, StreamEvent
from volume_bot.utils.logger import logger_manager

logger = logger_manager.setup_logger(__name__)

_HELIUS_KEY = os.getenv("HELIUS_API_KEY", "")
STREAM_WS_URL = os.getenv("STREAM_WS_URL") or (
    f"wss://atlas-mainnet.helius-rpc.com/?api-key={_HELIUS_KEY}" if _HELIUS_KEY else ""
)

HEALTH_CHECK_INTERVAL = float(os.getenv("STREAM_HEALTH_CHECK_SECS", "30"))
PONG_TIMEOUT = float(os.getenv("STREAM_PONG_TIMEOUT_SECS", "60"))
RECONNECT_BASE_DELAY = float(os.getenv("STREAM_RECONNECT_BASE_SECS", "1"))
RECONNECT_MAX_DELAY = float(os.getenv("STREAM_RECONNECT_MAX_SECS", "30"))
MAX_RECONNECT_ATTEMPTS = int(os.getenv("STREAM_MAX_RECONNECT_ATTEMPTS", "10"))

LAMPORTS_PER_SOL = 1_000_000_000
MIN_SOL_DELTA = 0.0001

Listener = Callable[[StreamEvent], None]


def backoff_delay(attempt: int, base: float = RECONNECT_BASE_DELAY, cap: float = RECONNECT_MAX_DELAY) -> float:
    """Retardo antes del reintento ``attempt`` (1, 2, 3...)."""
    return min(base * (2 ** max(0, attempt - 1)), cap)


def _account_keys(message: Mapping[str, Any]) -> List[str]:
    keys = []
    for k in message.get("accountKeys") or []:
        keys.append(k.get("pubkey", "") if isinstance(k, Mapping) else str(k))
    return keys


def _token_amounts(balances: Iterable[Mapping[str, Any]], token_mint: str) -> Dict[str, float]:
    """owner -> uiAmount para las cuentas del mint."""
    out: Dict[str, float] = {}
    for b in balances or []:
        if b.get("mint") != token_mint:
            continue
        owner = b.get("owner") or str(b.get("accountIndex", ""))
        ui = (b.get("uiTokenAmount") or {}).get("uiAmount")
        out[owner] = out.get(owner, 0.0) + float(ui or 0)
    return out


def parse_transaction(result: Mapping[str, Any], token_mint: str, wallets: Iterable[str]) -> Optional[ParsedTransaction]:
    """Normaliza una notificación de transacción; None si la transacción falló."""
    wrapper = result.get("transaction") or {}
    meta = wrapper.get("meta") or result.get("meta") or {}
    if meta.get("err") is not None:
        return None
    inner = wrapper.get("transaction") or {}
    message = inner.get("message") or {}
    accounts = _account_keys(message)
    signature = result.get("signature") or next(iter(inner.get("signatures") or []), "")
    own = set(wallets)

    pre = _token_amounts(meta.get("preTokenBalances"), token_mint)
    post = _token_amounts(meta.get("postTokenBalances"), token_mint)
    owners = list(dict.fromkeys([*pre, *post]))
    own_owners = [o for o in owners if o in own]
    if own_owners:
        wallet = own_owners[0]
    elif accounts and accounts[0] in owners:
        wallet = accounts[0]
    else:
        wallet = owners[0] if owners else (accounts[0] if accounts else None)

    tx_type = "unknown"
    token_delta = 0.0
    if owners and wallet is not None:
        token_delta = post.get(wallet, 0.0) - pre.get(wallet, 0.0)
        if token_delta > 0:
            tx_type = "buy"
        elif token_delta < 0:
            tx_type = "sell"
        else:
            tx_type = "transfer"

    sol_amount = 0.0
    pre_sol, post_sol = meta.get("preBalances") or [], meta.get("postBalances") or []
    if pre_sol and post_sol:
        sol_amount = abs(pre_sol[0] - post_sol[0]) / LAMPORTS_PER_SOL
        if sol_amount <= MIN_SOL_DELTA:
            sol_amount = 0.0

    token_amount = abs(token_delta)
    price = sol_amount / token_amount if sol_amount > 0 and token_amount > 0 else None
    return ParsedTransaction(
        signature=signature,
        slot=int(result.get("slot") or 0),
        timestamp=float(result.get("blockTime") or time.time()),
        type=tx_type,
        accounts=accounts,
        token_amount=token_amount,
        sol_amount=sol_amount,
        price=price,
        wallet=wallet,
        is_own_wallet=bool(own.intersection(accounts)) or wallet in own,
    )


class StreamClient:
    def __init__(
        self,
        token_mint: str,
        wallets: Iterable[str],
        ws_url: str = STREAM_WS_URL,
        health_check_interval: float = HEALTH_CHECK_INTERVAL,
        pong_timeout: float = PONG_TIMEOUT,
        reconnect_base_delay: float = RECONNECT_BASE_DELAY,
        reconnect_max_delay: float = RECONNECT_MAX_DELAY,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        connect: Callable[..., Any] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.token_mint = token_mint
        self.wallets: List[str] = list(wallets)
        self.ws_url = ws_url
        self.health_check_interval = health_check_interval
        self.pong_timeout = pong_timeout
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self._connect_fn = connect or websockets.connect
        self._sleep = sleep

        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self._ws = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._running = False
        self._wakeup: asyncio.Event | None = None

        self._req_id = 0
        self._pending: Dict[int, str] = {}          # id de petición -> "tx" | wallet
        self._subscriptions: Dict[int, str] = {}    # id de suscripción -> "tx" | wallet
        self._last_pong = 0.0
        self.last_price: Optional[float] = None
        self.reconnect_attempts = 0
        self.reconnect_delays: List[float] = []

    # ---------- API pública ----------
    def add_listener(self, fn: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(fn)

        def _off() -> None:
            with self._lock:
                if fn in self._listeners:
                    self._listeners.remove(fn)
        return _off

    def start(self) -> None:
        if self._running:
            logger.warning(f"Stream {self.token_mint[:8]}… ya en marcha")
            return
        if not self.ws_url:
            raise ValueError("STREAM_WS_URL (o HELIUS_API_KEY) no configurado")
        self._running = True
        self._thread = threading.Thread(target=self._run_event_loop, name=f"stream-{self.token_mint[:8]}",
                                        daemon=True)
        self._thread.start()

    def disconnect(self, timeout: float = 10.0) -> None:
        self._running = False
        loop, ws, wakeup = self._loop, self._ws, self._wakeup
        if loop and wakeup is not None:
            # corta la espera de backoff entre reconexiones
            try:
                loop.call_soon_threadsafe(wakeup.set)
            except RuntimeError as e:
                logger.debug(f"Loop del stream ya cerrado: {e}")
        if loop and loop.is_running() and ws is not None:
            fut = asyncio.run_coroutine_threadsafe(self._unsubscribe_all(ws, close=True), loop)
            try:
                fut.result(timeout=timeout)
            except Exception as e:
                logger.warning(f"Cierre del stream {self.token_mint[:8]}… incompleto: {e}")
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info(f"Stream {self.token_mint[:8]}… desconectado")

    def update_wallets(self, wallets: Iterable[str]) -> None:
        self.wallets = list(wallets)
        loop, ws = self._loop, self._ws
        if loop and loop.is_running() and ws is not None:
            asyncio.run_coroutine_threadsafe(self._resubscribe(ws), loop)

    @property
    def is_connected(self) -> bool:
        return self._running and self._ws is not None

    # ---------- bucle asyncio ----------
    def _run_event_loop(self) -> None:
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self.run())
        except Exception as e:
            logger.exception(f"Event loop del stream {self.token_mint[:8]}… falló: {e}")
        finally:
            self._loop.close()
            self._loop = None

    async def run(self) -> None:
        """Conecta y reconecta hasta ``disconnect()`` o hasta agotar intentos."""
        self._running = True
        self._wakeup = asyncio.Event()
        attempt = 0
        while self._running:
            clean = False
            try:
                async with self._connect_fn(self.ws_url, ping_interval=None, close_timeout=5) as ws:
                    self._ws = ws
                    attempt = 0
                    self.reconnect_attempts = 0
                    self._last_pong = time.monotonic()
                    self._emit(StreamEventType.CONNECTED, {"url": self.ws_url.split("?")[0]})
                    await self._subscribe_all(ws)
                    clean = await self._consume(ws)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Stream {self.token_mint[:8]}… error de conexión: {e}")
            finally:
                if self._ws is not None:
                    self._emit(StreamEventType.DISCONNECTED, {})
                self._ws = None
                self._pending.clear()
                self._subscriptions.clear()

            if not self._running or clean:
                break
            if attempt >= self.max_reconnect_attempts:
                logger.error(f"Stream {self.token_mint[:8]}…: {attempt} reintentos fallidos, se abandona")
                self._emit(StreamEventType.ERROR, {"message": "max_reconnect_attempts", "attempts": attempt})
                self._running = False
                break
            attempt += 1
            self.reconnect_attempts = attempt
            delay = backoff_delay(attempt, self.reconnect_base_delay, self.reconnect_max_delay)
            self.reconnect_delays.append(delay)
            logger.info(f"Stream {self.token_mint[:8]}… reconectando en {delay:.1f}s (intento {attempt})")
            await self._backoff(delay)

    async def _backoff(self, delay: float) -> None:
        if self._sleep is not None:
            await self._sleep(delay)
            return
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _consume(self, ws) -> bool:
        """Lee mensajes hasta cierre. True si el cierre fue pedido por nosotros."""
        heartbeat = asyncio.ensure_future(self._heartbeat(ws))
        try:
            async for raw in ws:
                if not self._running:
                    return True
                self._handle_message(raw)
        finally:
            heartbeat.cancel()
        return not self._running

    async def _heartbeat(self, ws) -> None:
        while self._running:
            await asyncio.sleep(self.health_check_interval)
            if time.monotonic() - self._last_pong > self.pong_timeout:
                logger.warning(f"Stream {self.token_mint[:8]}… sin pong en {self.pong_timeout:.0f}s, forzando reconexión")
                await ws.close()
                return
            await self._send(ws, "ping", None)

    # ---------- suscripciones ----------
    async def _send(self, ws, method: str, params: Optional[list], tag: str | None = None) -> int:
        self._req_id += 1
        msg: Dict[str, Any] = {"jsonrpc": "2.0", "id": self._req_id, "method": method}
        if params is not None:
            msg["params"] = params
        if tag is not None:
            self._pending[self._req_id] = tag
        await ws.send(json.dumps(msg))
        return self._req_id

    async def _subscribe_all(self, ws) -> None:
        await self._send(ws, "transactionSubscribe", [
            {"vote": False, "failed": False, "accountInclude": [*self.wallets, self.token_mint]},
            {
                "commitment": "confirmed",
                "encoding": "jsonParsed",
                "transactionDetails": "full",
                "maxSupportedTransactionVersion": 0,
            },
        ], tag="tx")
        for wallet in self.wallets:
            await self._send(ws, "accountSubscribe", [wallet, {"commitment": "confirmed", "encoding": "jsonParsed"}],
                             tag=wallet)

    async def _unsubscribe_all(self, ws, close: bool = False) -> None:
        for sub_id, tag in list(self._subscriptions.items()):
            method = "transactionUnsubscribe" if tag == "tx" else "accountUnsubscribe"
            try:
                await self._send(ws, method, [sub_id])
            except Exception as e:
                logger.debug(f"Unsubscribe {sub_id} falló: {e}")
        self._subscriptions.clear()
        if close:
            await ws.close()

    async def _resubscribe(self, ws) -> None:
        await self._unsubscribe_all(ws)
        await self._subscribe_all(ws)

    # ---------- mensajes ----------
    def _handle_message(self, raw: str | bytes) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug(f"Mensaje no JSON ignorado: {raw!r:.120}")
            return
        if not isinstance(msg, dict):
            return

        if msg.get("result") == "pong":
            self._last_pong = time.monotonic()
            return
        if "id" in msg and "result" in msg:
            tag = self._pending.pop(msg["id"], None)
            if tag is not None and isinstance(msg["result"], int):
                self._subscriptions[msg["result"]] = tag
            return
        if msg.get("error"):
            logger.warning(f"Stream {self.token_mint[:8]}… error RPC: {msg['error']}")
            return

        method = msg.get("method")
        params = msg.get("params") or {}
        if method == "transactionNotification":
            self._on_transaction(params.get("result") or {})
        elif method == "accountNotification":
            self._on_account(params.get("subscription"), params.get("result") or {})

    def _on_transaction(self, result: Mapping[str, Any]) -> None:
        parsed = parse_transaction(result, self.token_mint, self.wallets)
        if parsed is None:
            return
        self._emit(StreamEventType.TRANSACTION, {}, parsed)
        if parsed.price is None:
            return
        old = self.last_price
        self.last_price = parsed.price
        if old:
            self._emit(StreamEventType.PRICE_CHANGE, {
                "old_price": old,
                "new_price": parsed.price,
                "change_percent": (parsed.price - old) / old * 100,
            })
        else:
            self._emit(StreamEventType.PRICE_CHANGE, {"old_price": None, "new_price": parsed.price,
                                                      "change_percent": 0.0})

    def _on_account(self, sub_id: Optional[int], result: Mapping[str, Any]) -> None:
        wallet = self._subscriptions.get(sub_id) if sub_id is not None else None
        value = result.get("value") or {}
        lamports = value.get("lamports")
        if wallet is None or lamports is None:
            return
        self._emit(StreamEventType.BALANCE_CHANGE, {
            "wallet": wallet,
            "sol_balance": lamports / LAMPORTS_PER_SOL,
            "slot": (result.get("context") or {}).get("slot"),
        })

    def _emit(self, event_type: StreamEventType, data: Dict[str, Any],
              transaction: ParsedTransaction | None = None) -> None:
        event = StreamEvent(type=event_type, data=data, transaction=transaction)
        with self._lock:
            listeners = list(self._listeners)
        for fn in listeners:
            try:
                fn(event)
            except Exception as e:
                logger.exception(f"Listener del stream falló ({event_type.value}): {e}")
