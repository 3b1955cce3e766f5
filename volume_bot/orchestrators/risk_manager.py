# orchestrators/risk_manager.py
from __future__ import annotations

import os
import threading
import time
from typing import Callable, List, Optional, Sequence

from volume_bot.controllers.trade_executor import TradeExecutor, summarize_executions
from volume_bot.enums.event_type import StreamEventType, TriggerType
from volume_bot.exceptions import PersistenceError, StalenessError, VolumeBotError
from volume_bot.models.events import StreamEvent
from volume_bot.models.execution import ExecutionContext
from volume_bot.models.plan import WalletRecord
from volume_bot.models.risk import RiskExecution, RiskSettings, RiskState
from volume_bot.repositories.execution_repository import RiskExecutionRepository
from volume_bot.services.allocation_planner import AllocationPlanner
from volume_bot.services.stream_client import StreamClient
from volume_bot.utils.logger import logger_manager, log_function
from volume_bot.utils.timeouts import call_with_timeout

logger = logger_manager.setup_logger(__name__)

MIN_EXECUTION_INTERVAL = float(os.getenv("RISK_MIN_EXECUTION_INTERVAL_SECS", "5"))
PRICE_STALE_THRESHOLD = float(os.getenv("RISK_PRICE_STALE_SECS", "60"))
BALANCE_TIMEOUT_SECS = float(os.getenv("RISK_BALANCE_TIMEOUT_SECS", "15"))
POSITION_EPSILON = 1e-9

TriggerListener = Callable[[RiskExecution], None]


class RiskManager:
    """
    Take profit / stop loss / trailing stop / parada de emergencia para una sesión.

    Se alimenta del StreamClient: las compras y ventas propias ajustan el
    precio medio de entrada (VWAP) y cada cambio de precio evalúa los
    disparadores en orden de prioridad. Cada disparador actúa una sola vez
    por sesión y la venta sale por el mismo TradeExecutor que los ciclos.
    """

    def __init__(
        self,
        session_id: str,
        user_id: str,
        token_mint: str,
        wallets: Sequence[WalletRecord],
        executor: TradeExecutor,
        planner: AllocationPlanner,
        settings: RiskSettings | None = None,
        repo: RiskExecutionRepository | None = None,
        on_emergency: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.time,
        min_execution_interval: float = MIN_EXECUTION_INTERVAL,
        price_stale_threshold: float = PRICE_STALE_THRESHOLD,
        async_execution: bool = True,
    ):
        self.wallets: List[WalletRecord] = list(wallets)
        self.executor = executor
        self.planner = planner
        self.settings = settings or RiskSettings()
        self.repo = repo
        self._on_emergency = on_emergency
        self._clock = clock
        self.min_execution_interval = min_execution_interval
        self.price_stale_threshold = price_stale_threshold
        self.async_execution = async_execution

        self.state = RiskState(session_id=session_id, user_id=user_id, token_mint=token_mint)
        self._state_lock = threading.RLock()
        self._exec_lock = threading.Lock()
        self._listeners: List[TriggerListener] = []
        self._stream: Optional[StreamClient] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._workers: List[threading.Thread] = []

    # ---------- ciclo de vida ----------
    @log_function
    def start(self, stream: StreamClient | None = None, entry_price: float | None = None,
              position_tokens: float = 0.0) -> None:
        with self._state_lock:
            if entry_price and entry_price > 0:
                self.state.entry_price = entry_price
                self.state.position_tokens = position_tokens
                self.state.position_cost = entry_price * position_tokens
                self._reset_marks(entry_price)
            self.state.is_monitoring = True
        if stream is not None:
            self._stream = stream
            self._unsubscribe = stream.add_listener(self.handle_stream_event)
            if not stream.is_connected:
                stream.start()
        logger.info(f"Riesgo activo para {self.state.token_mint[:8]}… (sesión {self.state.session_id[:8]})")

    @log_function
    def stop(self, disconnect_stream: bool = True) -> None:
        with self._state_lock:
            self.state.is_monitoring = False
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._stream is not None and disconnect_stream:
            self._stream.disconnect()
        self._stream = None

    def join(self, timeout: float | None = None) -> None:
        """Espera a las liquidaciones lanzadas en segundo plano."""
        for th in list(self._workers):
            th.join(timeout)

    def on_trigger(self, fn: TriggerListener) -> Callable[[], None]:
        self._listeners.append(fn)
        return lambda: self._listeners.remove(fn) if fn in self._listeners else None

    @log_function
    def update_settings(self, **changes) -> RiskSettings:
        with self._state_lock:
            self.settings = self.settings.model_copy(update=changes)
            return self.settings

    def get_state(self) -> RiskState:
        with self._state_lock:
            return self.state.model_copy(deep=True)

    # ---------- entradas ----------
    def handle_stream_event(self, event: StreamEvent) -> None:
        if event.type == StreamEventType.TRANSACTION and event.transaction is not None:
            tx = event.transaction
            if not tx.is_own_wallet:
                return
            if tx.type == "buy" and tx.token_amount > 0:
                self.record_buy(tx.token_amount, tx.sol_amount)
            elif tx.type == "sell" and tx.token_amount > 0:
                self.record_sell(tx.token_amount)
        elif event.type == StreamEventType.PRICE_CHANGE:
            price = event.data.get("new_price")
            if price:
                self.update_price(float(price), observed_at=event.timestamp)
        elif event.type == StreamEventType.ERROR:
            logger.error(f"Stream de {self.state.token_mint[:8]}… abandonado: {event.data}")

    def record_buy(self, tokens: float, sol: float) -> None:
        with self._state_lock:
            s = self.state
            opening = s.position_tokens <= POSITION_EPSILON
            s.position_tokens += tokens
            s.position_cost += sol
            if s.position_tokens > POSITION_EPSILON and s.position_cost > 0:
                s.entry_price = s.position_cost / s.position_tokens
                if opening:
                    # los máximos vistos antes de abrir la posición no cuentan
                    self._reset_marks(s.entry_price)
            logger.debug(f"Compra propia: {tokens} tokens, entrada media {s.entry_price:.10f}")

    def record_sell(self, tokens: float) -> None:
        with self._state_lock:
            s = self.state
            if s.position_tokens <= POSITION_EPSILON:
                return
            sold = min(tokens, s.position_tokens)
            s.position_cost -= s.position_cost * (sold / s.position_tokens)
            s.position_tokens -= sold
            if s.position_tokens <= POSITION_EPSILON:
                s.position_tokens = 0.0
                s.position_cost = 0.0
                s.is_monitoring = False
                logger.info(f"Posición cerrada en {s.token_mint[:8]}…, se detiene la monitorización")

    def _reset_marks(self, entry_price: float) -> None:
        s = self.state
        s.highest_price = entry_price
        s.lowest_price = entry_price
        s.trailing_stop_price = None

    def update_price(self, price: float, observed_at: float | None = None) -> Optional[TriggerType]:
        if price <= 0:
            return None
        with self._state_lock:
            s = self.state
            s.current_price = price
            s.last_price_update = observed_at if observed_at is not None else self._clock()
            if s.entry_price > 0:
                s.highest_price = max(s.highest_price, price)
                s.lowest_price = price if s.lowest_price <= 0 else min(s.lowest_price, price)
        try:
            return self.evaluate()
        except StalenessError as e:
            logger.warning(f"Evaluación descartada: {e}")
            return None

    # ---------- evaluación ----------
    def evaluate(self) -> Optional[TriggerType]:
        with self._state_lock:
            s, cfg = self.state, self.settings
            if not s.is_monitoring or not cfg.enabled or s.entry_price <= 0 or s.current_price <= 0:
                return None
            now = self._clock()
            age = now - s.last_price_update
            if age > self.price_stale_threshold:
                raise StalenessError(f"Último precio de hace {age:.0f}s")

            price = s.current_price
            s.profit_percent = (price - s.entry_price) / s.entry_price * 100
            if cfg.trailing_stop_enabled and s.profit_percent >= cfg.trailing_stop_activation_percent:
                floor = s.highest_price * (1 - cfg.trailing_stop_percent / 100)
                if s.trailing_stop_price is None or floor > s.trailing_stop_price:
                    s.trailing_stop_price = floor

            trigger = self._select_trigger(s, cfg)
            if trigger is None:
                return None
            if now - s.last_execution_at < self.min_execution_interval:
                logger.debug(f"{trigger.value} en espera: cooldown entre ventas")
                return None
            if not self._exec_lock.acquire(blocking=False):
                logger.debug(f"{trigger.value} en espera: liquidación en curso")
                return None

            s.triggers.mark(trigger)
            s.last_execution_at = now
            if trigger == TriggerType.EMERGENCY_STOP:
                s.is_monitoring = False
            sell_percent = cfg.take_profit_sell_percent if trigger == TriggerType.TAKE_PROFIT else 100.0
            profit = s.profit_percent

        logger.warning(f"[{trigger.value}] {s.token_mint[:8]}… precio={price:.10f} PnL={profit:.2f}% → vende {sell_percent:.0f}%")
        self._dispatch(trigger, price, profit, sell_percent)
        return trigger

    @staticmethod
    def _select_trigger(s: RiskState, cfg: RiskSettings) -> Optional[TriggerType]:
        t = s.triggers
        if cfg.emergency_stop_enabled and not t.emergency_stop and s.profit_percent <= -cfg.emergency_stop_loss_percent:
            return TriggerType.EMERGENCY_STOP
        if cfg.stop_loss_enabled and not t.stop_loss and s.profit_percent <= -cfg.stop_loss_percent:
            return TriggerType.STOP_LOSS
        if (cfg.trailing_stop_enabled and not t.trailing_stop and s.trailing_stop_price is not None
                and s.current_price <= s.trailing_stop_price):
            return TriggerType.TRAILING_STOP
        if cfg.take_profit_enabled and not t.take_profit and s.profit_percent >= cfg.take_profit_percent:
            return TriggerType.TAKE_PROFIT
        return None

    @log_function
    def manual_emergency_stop(self) -> bool:
        with self._state_lock:
            s = self.state
            if s.triggers.emergency_stop:
                return False
            if not self._exec_lock.acquire(blocking=False):
                return False
            s.triggers.mark(TriggerType.EMERGENCY_STOP)
            s.is_monitoring = False
            s.last_execution_at = self._clock()
            price, profit = s.current_price, s.profit_percent
        self._dispatch(TriggerType.EMERGENCY_STOP, price, profit, 100.0)
        return True

    # ---------- ejecución ----------
    def _dispatch(self, trigger: TriggerType, price: float, profit: float, sell_percent: float) -> None:
        if not self.async_execution:
            self._liquidate(trigger, price, profit, sell_percent)
            return
        th = threading.Thread(target=self._liquidate, args=(trigger, price, profit, sell_percent),
                              name=f"risk-{trigger.value}-{self.state.session_id[:8]}", daemon=True)
        self._workers = [w for w in self._workers if w.is_alive()] + [th]
        th.start()

    def _liquidate(self, trigger: TriggerType, price: float, profit: float, sell_percent: float) -> None:
        s = self.state
        execution = RiskExecution(session_id=s.session_id, trigger=trigger, price=price,
                                  profit_percent=profit, sell_percent=sell_percent, success=False)
        try:
            wallets, volumes = self._sell_volumes(price, sell_percent)
            if not wallets:
                execution.error = "no_tokens"
            else:
                plan = self.planner.build_liquidation_plan(wallets, volumes, s.token_mint, s.user_id)
                ctx = ExecutionContext(
                    session_id=s.session_id,
                    user_id=s.user_id,
                    token_mint=s.token_mint,
                    platform=self.settings.platform,
                    slippage_bps=self.settings.slippage_bps,
                )
                records = self.executor.execute_transactions(plan, ctx, current_price=price)
                summary = summarize_executions(records)
                execution.wallets = summary.total
                execution.success = summary.success > 0
                if not execution.success:
                    execution.error = next((r.error or r.reason for r in records if not r.success), None)
                if execution.success and sell_percent >= 100:
                    with self._state_lock:
                        s.is_monitoring = False
        except VolumeBotError as e:
            execution.error = str(e)
            logger.error(f"Liquidación {trigger.value} fallida: {e}")
        except Exception as e:
            execution.error = str(e)
            logger.exception(f"Liquidación {trigger.value} con error inesperado: {e}")
        finally:
            self._exec_lock.release()

        self._persist(execution)
        for fn in list(self._listeners):
            try:
                fn(execution)
            except Exception as e:
                logger.exception(f"Listener de disparo falló: {e}")
        if trigger == TriggerType.EMERGENCY_STOP and self._on_emergency:
            try:
                self._on_emergency(s.session_id)
            except Exception as e:
                logger.exception(f"Callback de emergencia falló: {e}")

    def _sell_volumes(self, price: float, sell_percent: float) -> tuple[List[WalletRecord], List[float]]:
        """Volumen en SOL por wallet equivalente al % de su saldo de tokens."""
        wallets: List[WalletRecord] = []
        volumes: List[float] = []
        for w in self.wallets:
            try:
                balance = call_with_timeout(self.executor.balances.token_balance, BALANCE_TIMEOUT_SECS,
                                            w.public_key, self.state.token_mint)
            except VolumeBotError as e:
                logger.warning(f"Saldo de {w.public_key[:8]}… no disponible: {e}")
                continue
            if balance.amount <= 0:
                continue
            wallets.append(w)
            volumes.append(balance.amount * sell_percent / 100 * price)
        return wallets, volumes

    def _persist(self, execution: RiskExecution) -> None:
        if self.repo is None:
            return
        try:
            self.repo.append(execution)
        except PersistenceError as e:
            logger.error(f"No se pudo guardar el disparo {execution.trigger.value}: {e}")
