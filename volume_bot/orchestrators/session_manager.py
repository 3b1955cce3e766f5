# orchestrators/session_manager.py
from __future__ import annotations

import os
import random
import threading
import uuid
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import requests

from volume_bot.controllers.trade_executor import TradeExecutor, summarize_executions
from volume_bot.enums.event_type import EventType
from volume_bot.enums.session_status import SessionStatus, can_transition
from volume_bot.enums.strategy import Phase, Platform, TradeIntent
from volume_bot.exceptions import PersistenceError, SessionStateError, ValidationError, VolumeBotError
from volume_bot.models.classifier import ClassifierConfig
from volume_bot.models.execution import ExecutionContext, ExecutionRecord, ExecutionSummary
from volume_bot.models.plan import PlanRules, WalletRecord
from volume_bot.models.risk import RiskSettings
from volume_bot.models.session import VolumeBotSettings, VolumeSession
from volume_bot.orchestrators.cycle_scheduler import CycleScheduler
from volume_bot.orchestrators.risk_manager import RiskManager
from volume_bot.repositories.execution_repository import ExecutionRepository, RiskExecutionRepository
from volume_bot.repositories.session_repository import SessionRepository
from volume_bot.repositories.settings_repository import SettingsRepository
from volume_bot.services.allocation_planner import AllocationPlanner
from volume_bot.services.event_bus import EventBus
from volume_bot.services.market_service import MarketService
from volume_bot.services.platform_detector import PlatformDetector
from volume_bot.services.ports import WalletCustody
from volume_bot.services.status_classifier import StatusClassifier
from volume_bot.services.stream_client import StreamClient
from volume_bot.utils.logger import logger_manager, log_function

logger = logger_manager.setup_logger(__name__)

STABILIZATION_THRESHOLD = 5
ARBITRAGE_PROFIT_FLOOR = 0.2
STOP_JOIN_TIMEOUT_SECS = float(os.getenv("SESSION_STOP_JOIN_SECS", "60"))
LEASE_TTL_SECS = float(os.getenv("SESSION_LEASE_TTL_SECS", "30"))

StreamFactory = Callable[[str, List[str]], StreamClient]


def rules_from_settings(settings: VolumeBotSettings) -> PlanRules:
    """Foto de reglas para un ciclo, derivada de los ajustes de la sesión."""
    return PlanRules(
        initial_wallet_count=settings.active_wallet_count,
        buy_pressure_volume=settings.max_tx_sol,
        stabilization_threshold=STABILIZATION_THRESHOLD,
        arbitrage_profit_floor=ARBITRAGE_PROFIT_FLOOR,
        global_stop_loss=settings.max_price_drop_percent,
    )


def risk_settings_from(settings: VolumeBotSettings) -> RiskSettings:
    return RiskSettings(
        take_profit_percent=settings.take_profit_percent,
        trailing_stop_percent=settings.trailing_stop_percent,
        stop_loss_percent=settings.max_price_drop_percent,
        emergency_stop_enabled=settings.emergency_stop_enabled,
        platform=settings.platform if settings.platform != Platform.AUTO else Platform.JUPITER,
    )


class PositionBook:
    """
    Posición de la sesión a coste medio, construida con los fills del ejecutor.

    Las compras con precio conocido suman tokens (notional/precio) y coste;
    las ventas realizan la parte que casa con tokens comprados por la sesión.
    """

    def __init__(self) -> None:
        self.tokens = 0.0
        self.cost = 0.0
        self.realized = 0.0
        self.last_price: Optional[float] = None

    def apply(self, record: ExecutionRecord) -> None:
        if not record.success or not record.price:
            return
        self.last_price = record.price
        notional = record.notional if record.notional is not None else record.volume
        intent = str(getattr(record.intent, "value", record.intent))
        if intent == TradeIntent.BUY.value:
            self.tokens += notional / record.price
            self.cost += notional
        elif intent == TradeIntent.SELL.value and record.sold_tokens and self.tokens > 0:
            matched = min(record.sold_tokens, self.tokens)
            basis = self.cost * matched / self.tokens
            self.realized += notional * matched / record.sold_tokens - basis
            self.cost -= basis
            self.tokens -= matched

    @property
    def entry_price(self) -> Optional[float]:
        return self.cost / self.tokens if self.tokens > 0 else None

    def pnl(self, fees: float = 0.0) -> float:
        """Realizado + latente al último precio, menos comisiones."""
        unrealized = self.tokens * self.last_price - self.cost if self.last_price else 0.0
        return self.realized + unrealized - fees


class _SessionRunner:
    """Estado en memoria de una sesión en marcha. Solo lo toca el SessionManager."""

    def __init__(self, session: VolumeSession, settings: VolumeBotSettings, wallets: List[WalletRecord]):
        self.session = session
        self.settings = settings
        self.wallets = wallets
        self.scheduler: Optional[CycleScheduler] = None
        self.risk: Optional[RiskManager] = None
        self.lock = threading.Lock()
        self.stopping = False   # no arrancan más ciclos; el que esté en curso termina y persiste
        self.closed = False     # ya hubo escritura terminal
        self.cycle = 0
        self.rotation = 0
        self.book = PositionBook()
        self.log = logger_manager.session_logger(__name__, session.id)


class SessionManager:
    """
    Máquina de estados de las sesiones de volumen.

    pending → running → {paused, stopped, completed, emergency_stopped, error}.
    Cada sesión tiene su propio CycleScheduler; un ciclo pide estrategia al
    clasificador, plan al planner, lo ejecuta y persiste los agregados.
    """

    def __init__(
        self,
        session_repo: SessionRepository,
        settings_repo: SettingsRepository,
        execution_repo: ExecutionRepository,
        classifier: StatusClassifier,
        planner: AllocationPlanner,
        executor: TradeExecutor,
        custody: WalletCustody,
        event_bus: EventBus | None = None,
        market: MarketService | None = None,
        risk_repo: RiskExecutionRepository | None = None,
        stream_factory: StreamFactory | None = None,
        detector: PlatformDetector | None = None,
        rng: random.Random | None = None,
        runner_id: str | None = None,
        stop_join_timeout: float = STOP_JOIN_TIMEOUT_SECS,
    ):
        self.sessions = session_repo
        self.settings_repo = settings_repo
        self.executions = execution_repo
        self.classifier = classifier
        self.planner = planner
        self.executor = executor
        self.custody = custody
        self.bus = event_bus or EventBus()
        self.market = market
        self.risk_repo = risk_repo
        self.stream_factory = stream_factory
        self.detector = detector or PlatformDetector()
        self.rng = rng or random.Random()
        self.runner_id = runner_id or f"runner-{uuid.uuid4().hex[:12]}"
        self.stop_join_timeout = stop_join_timeout

        self._runners: Dict[str, _SessionRunner] = {}
        self._lock = threading.RLock()

    # ---------- ajustes ----------
    @log_function
    def get_settings(self, user_id: str, token_mint: str) -> VolumeBotSettings:
        stored = self.settings_repo.get(user_id, token_mint)
        return stored or VolumeBotSettings(user_id=user_id, token_mint=token_mint)

    @log_function
    def save_settings(self, settings: VolumeBotSettings) -> VolumeBotSettings:
        if settings.min_tx_sol <= 0 or settings.max_tx_sol < settings.min_tx_sol:
            raise ValidationError("Rango de operación inválido (min_tx_sol/max_tx_sol)")
        if settings.trade_interval_ms <= 0 or settings.active_wallet_count <= 0:
            raise ValidationError("trade_interval_ms y active_wallet_count deben ser positivos")
        return self.settings_repo.upsert(settings)

    # ---------- ciclo de vida ----------
    @log_function
    def start_session(
        self,
        user_id: str,
        token_mint: str,
        settings: VolumeBotSettings | None = None,
        wallets: Sequence[WalletRecord] | None = None,
    ) -> VolumeSession:
        if not user_id or not token_mint:
            raise ValidationError("user_id y token_mint son obligatorios")

        with self._lock:
            if any(r.session.user_id == user_id and r.session.token_mint == token_mint
                   for r in self._runners.values()):
                raise SessionStateError(f"Ya hay una sesión en marcha para {token_mint}")
            existing = self.sessions.find_active(user_id, token_mint)
            if existing is not None:
                raise SessionStateError(f"Sesión {existing.id} ya activa para {token_mint}")

            settings = settings or self.get_settings(user_id, token_mint)
            if wallets is None:
                wallets = list(self.custody.list_wallets(user_id))
            wallets = [w for w in wallets if w.user_id == user_id]
            if not wallets:
                raise ValidationError(f"El usuario {user_id} no tiene wallets disponibles")

            session = VolumeSession(
                user_id=user_id,
                token_mint=token_mint,
                target_volume=settings.target_volume_sol,
                strategy=settings.strategy,
            )
            self.sessions.create(session)
            runner = _SessionRunner(session, settings, list(wallets))

            self.classifier.engage(token_mint, ClassifierConfig(
                user_id=user_id,
                rules=rules_from_settings(settings),
                emit_interval_ms=settings.trade_interval_ms,
                force_amm=settings.platform == Platform.JUPITER,
            ), session_id=session.id)
            self.sessions.update_status(session.id, SessionStatus.RUNNING)
            session.status = SessionStatus.RUNNING

            runner.scheduler = CycleScheduler(
                name=session.id[:8],
                tick=lambda: self._run_cycle(runner),
                interval=settings.trade_interval_ms / 1000,
                jitter_percent=settings.amount_variance_percent if settings.randomize_timing else 0.0,
                rng=self.rng,
                on_error=lambda e: self._on_cycle_error(runner, e),
            )
            self._runners[session.id] = runner

        if settings.smart_profit_enabled and self.stream_factory is not None:
            self._start_risk(runner)

        runner.log.info(f"Sesión iniciada para {token_mint} ({len(wallets)} wallets, objetivo {settings.target_volume_sol} SOL)")
        self._emit(runner, EventType.SESSION_STARTED, status=session.status.value,
                   target_volume=session.target_volume, strategy=session.strategy.value)
        runner.scheduler.start(run_immediately=True)
        return session

    def _start_risk(self, runner: _SessionRunner) -> None:
        s = runner.session
        try:
            stream = self.stream_factory(s.token_mint, [w.public_key for w in runner.wallets])
            risk = RiskManager(
                session_id=s.id,
                user_id=s.user_id,
                token_mint=s.token_mint,
                wallets=runner.wallets,
                executor=self.executor,
                planner=self.planner,
                settings=risk_settings_from(runner.settings),
                repo=self.risk_repo,
                on_emergency=self.emergency_stop,
            )
            risk.on_trigger(lambda ex: self._emit(runner, EventType.RULE_TRIGGERED, trigger=ex.trigger.value,
                                                  price=ex.price, profit_percent=ex.profit_percent,
                                                  success=ex.success, error=ex.error))
            risk.start(stream)
            runner.risk = risk
        except (VolumeBotError, ValueError) as e:
            runner.log.error(f"Gestor de riesgo no disponible: {e}")
            self._emit(runner, EventType.ERROR, message=f"smart_profit_unavailable: {e}")

    @log_function
    def stop_session(self, session_id: str, reason: str = "manual") -> bool:
        runner = self._runners.get(session_id)
        if reason == "emergency":
            status = SessionStatus.EMERGENCY_STOPPED
        elif reason == "completed":
            status = SessionStatus.COMPLETED
        else:
            status = SessionStatus.STOPPED
        if runner is None:
            # sesión huérfana (p. ej. otra instancia caída): cerrar solo en base de datos
            return self.sessions.update_status(session_id, status, stop_reason=reason)
        return self._finish(runner, status, reason)

    @log_function
    def emergency_stop(self, session_id: str) -> bool:
        runner = self._runners.get(session_id)
        if runner is None:
            return self.sessions.update_status(session_id, SessionStatus.EMERGENCY_STOPPED, stop_reason="emergency")
        self.classifier.emergency_stop(runner.session.token_mint, session_id=session_id)
        self._emit(runner, EventType.EMERGENCY_STOP, reason="emergency")
        return self._finish(runner, SessionStatus.EMERGENCY_STOPPED, "emergency")

    @log_function
    def pause_session(self, session_id: str) -> bool:
        return self._transition(session_id, SessionStatus.PAUSED)

    @log_function
    def resume_session(self, session_id: str) -> bool:
        return self._transition(session_id, SessionStatus.RUNNING)

    def _transition(self, session_id: str, target: SessionStatus) -> bool:
        runner = self._runners.get(session_id)
        if runner is None:
            raise SessionStateError(f"Sesión {session_id} no está en marcha en esta instancia")
        with runner.lock:
            if runner.stopping or not can_transition(runner.session.status, target):
                return False
            self.sessions.update_status(session_id, target)
            runner.session.status = target
        self._emit(runner, EventType.STATUS_UPDATE, status=target.value,
                   progress_percent=runner.session.progress_percent)
        return True

    def shutdown(self) -> None:
        for session_id in list(self._runners):
            try:
                self.stop_session(session_id, reason="shutdown")
            except VolumeBotError as e:
                logger.error(f"Error parando {session_id}: {e}")

    def _finish(self, runner: _SessionRunner, status: SessionStatus, reason: str,
                error_message: str | None = None) -> bool:
        with runner.lock:
            if runner.stopping:
                return False
            runner.stopping = True
        s = runner.session

        # primero se corta el scheduler y se espera al ciclo en curso,
        # que aún puede guardar sus ejecuciones y agregados
        if runner.scheduler is not None:
            runner.scheduler.cancel(timeout=self.stop_join_timeout)
        if runner.risk is not None:
            runner.risk.stop()
        self.classifier.disengage(s.token_mint, session_id=s.id)

        with runner.lock:
            runner.closed = True
            try:
                written = self.sessions.update_status(s.id, status, stop_reason=reason, error_message=error_message)
                if not written:
                    runner.log.warning("La fila ya estaba en estado terminal")
            except PersistenceError as e:
                runner.log.error(f"No se pudo persistir el cierre ({status.value}): {e}")
            s.status = status
            s.stop_reason = reason
            if error_message:
                s.error_message = error_message

        with self._lock:
            self._runners.pop(s.id, None)
        runner.log.info(f"Sesión cerrada: {status.value} ({reason}), volumen {s.executed_volume:.4f}/{s.target_volume}")
        self._emit(runner, EventType.SESSION_STOPPED, status=status.value, reason=reason,
                   executed_volume=s.executed_volume, trades_count=s.trades_count)
        return True

    # ---------- ciclo ----------
    def _run_cycle(self, runner: _SessionRunner) -> None:
        s, settings = runner.session, runner.settings
        if runner.stopping or s.status == SessionStatus.PAUSED:
            return
        if not self.sessions.acquire_lease(s.id, self.runner_id, max(LEASE_TTL_SECS, settings.trade_interval_ms / 1000 * 3)):
            runner.log.warning("Lease en manos de otra instancia, se omite el ciclo")
            return
        if self.classifier.is_emergency_stopped(s.token_mint, session_id=s.id):
            self._finish(runner, SessionStatus.EMERGENCY_STOPPED, "emergency")
            return

        runner.cycle += 1
        self._refresh_metrics(runner)
        strategy = self.classifier.get_recommended_strategy(s.token_mint, fallback=settings.strategy, session_id=s.id)

        volume = self._cycle_volume(runner)
        if volume <= 0:
            self._finish(runner, SessionStatus.COMPLETED, "target_reached")
            return

        wallets = self._pick_wallets(runner)
        plan = self.planner.generate_execution_plan(
            strategy, wallets, volume, rules_from_settings(settings), s.token_mint, s.user_id,
        )
        if not plan.success:
            runner.log.warning(f"Ciclo {runner.cycle} sin plan: {plan.error} {plan.violations or plan.message}")
            if plan.error == "rule_violation":
                self._emit(runner, EventType.RULE_TRIGGERED, violations=plan.violations, cycle=runner.cycle)
            self._emit(runner, EventType.ERROR, error=plan.error, message=plan.message,
                       violations=plan.violations, cycle=runner.cycle)
            return

        ctx = ExecutionContext(
            session_id=s.id,
            user_id=s.user_id,
            token_mint=s.token_mint,
            platform=self._platform(runner),
            slippage_bps=settings.slippage_bps,
        )
        records = self.executor.execute_transactions(plan, ctx, min_sol_balance=settings.min_sol_balance)
        summary = summarize_executions(records)

        with runner.lock:
            self._apply_summary(runner, records, summary)
            s.strategy = strategy
            try:
                # el log es append-only: lo ejecutado se guarda aunque la sesión ya esté cerrada
                self.executions.append(s.id, records, cycle=runner.cycle)
                if runner.closed:
                    runner.log.warning(f"Ciclo {runner.cycle} terminó tras el cierre; agregados no persistidos")
                    return
                self.sessions.update_progress(s)
            except PersistenceError as e:
                runner.log.error(f"Persistencia del ciclo {runner.cycle} fallida: {e}")

        for r in records:
            if r.success:
                self._emit(runner, EventType.TRADE_EXECUTED, wallet=r.public_key, intent=getattr(r.intent, "value", r.intent),
                           volume=r.volume, signature=r.signature, dust_prevention=r.dust_prevention)
        warning = None
        if summary.all_wallets_empty:
            warning = "all_wallets_empty"
        elif summary.failed:
            warning = f"{summary.failed} transacciones fallidas"
        self._emit(
            runner, EventType.STATUS_UPDATE,
            status=s.status.value,
            cycle=runner.cycle,
            strategy=strategy.value,
            executed_volume=s.executed_volume,
            progress_percent=s.progress_percent,
            is_healthy=summary.failed == 0,
            warning=warning,
            summary=summary.model_dump(),
        )

        if s.executed_volume >= s.target_volume:
            self._finish(runner, SessionStatus.COMPLETED, "target_reached")

    @staticmethod
    def _apply_summary(runner: _SessionRunner, records: Iterable[ExecutionRecord], summary: ExecutionSummary) -> None:
        s, book = runner.session, runner.book
        s.executed_volume += summary.executed_volume
        s.trades_count += summary.success
        s.buy_count += summary.buys_completed
        s.sell_count += summary.sells_completed
        s.fees_paid += summary.fees_collected
        for r in records:
            book.apply(r)
            if r.success and r.price:
                s.highest_price = max(s.highest_price or r.price, r.price)
                s.lowest_price = min(s.lowest_price or r.price, r.price)
        if book.entry_price is not None:
            s.entry_price = book.entry_price
        s.pnl = book.pnl(s.fees_paid)

    def _refresh_metrics(self, runner: _SessionRunner) -> None:
        if self.market is None:
            return
        mint = runner.session.token_mint
        try:
            raw = self.market.get_metrics(mint)
        except (requests.RequestException, ValueError) as e:
            runner.log.warning(f"Métricas no disponibles: {e}")
            return
        if raw:
            self.classifier.update_metrics(mint, raw, session_id=runner.session.id)

    def _cycle_volume(self, runner: _SessionRunner) -> float:
        s, st = runner.session, runner.settings
        remaining = s.target_volume - s.executed_volume
        if remaining <= 0:
            return 0.0
        if st.randomize_amounts:
            base = self.rng.uniform(st.min_tx_sol, st.max_tx_sol)
            variance = st.amount_variance_percent / 100
            base *= 1 + self.rng.uniform(-variance, variance)
        else:
            base = st.max_tx_sol
        # nunca por encima del tope: las reglas rechazarían el plan entero
        base = min(max(base, st.min_tx_sol), st.max_tx_sol)
        return min(remaining, base)

    def _pick_wallets(self, runner: _SessionRunner) -> List[WalletRecord]:
        pool, count = runner.wallets, min(runner.settings.active_wallet_count, len(runner.wallets))
        if runner.settings.wallet_rotation_mode == "sequential":
            start = runner.rotation % len(pool)
            runner.rotation += count
            return [pool[(start + i) % len(pool)] for i in range(count)]
        return self.rng.sample(pool, count)

    def _platform(self, runner: _SessionRunner) -> Platform:
        platform = runner.settings.platform
        if platform != Platform.AUTO:
            return platform
        status = self.classifier.get_status(runner.session.token_mint, session_id=runner.session.id)
        migrated = bool(status and status.phase == Phase.AMM_POOL)
        return self.detector.resolve_platform(runner.session.token_mint, {"migrationDetected": migrated})

    def _on_cycle_error(self, runner: _SessionRunner, error: Exception) -> None:
        with runner.lock:
            if runner.closed:
                return
            runner.session.error_message = str(error)
            try:
                self.sessions.update_progress(runner.session)
            except PersistenceError as e:
                runner.log.error(f"No se pudo guardar el error del ciclo: {e}")
        self._emit(runner, EventType.ERROR, message=str(error), cycle=runner.cycle)

    # ---------- consultas ----------
    def get_session(self, session_id: str) -> Optional[VolumeSession]:
        runner = self._runners.get(session_id)
        if runner is not None:
            return runner.session.model_copy()
        return self.sessions.get(session_id)

    @log_function
    def get_session_status(self, session_id: str, executions_limit: int = 20) -> Optional[dict]:
        session = self.get_session(session_id)
        if session is None:
            return None
        runner = self._runners.get(session_id)
        classifier = self.classifier.get_status(session.token_mint, session_id=session_id)
        return {
            "session": session.model_dump(mode="json"),
            "progress_percent": session.progress_percent,
            "recent_executions": self.executions.list_for_session(session_id, limit=executions_limit),
            "classifier": classifier.model_dump(mode="json") if classifier else None,
            "risk": runner.risk.get_state().model_dump(mode="json") if runner and runner.risk else None,
            "in_flight": bool(runner and runner.scheduler and runner.scheduler.in_flight),
        }

    def list_active_sessions(self, user_id: str | None = None) -> List[VolumeSession]:
        return self.sessions.list_active(user_id=user_id)

    def subscribe(self, token_mint: str, handler) -> Callable[[], None]:
        return self.bus.subscribe(token_mint, handler)

    def _emit(self, runner: _SessionRunner, event_type: EventType, **data) -> None:
        self.bus.emit(event_type, runner.session.token_mint, runner.session.id, **data)
