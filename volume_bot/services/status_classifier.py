"""
Market status classifier.

Turns a raw metrics payload for a token into a normalized snapshot, a market
phase (bonding curve vs AMM pool), a protocol state and the recommended
trading strategy. Downstream listeners are only notified when the
classification changes or the per-token emit interval has elapsed.
"""

from __future__ import annotations

import math
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from volume_bot.enums.strategy import Phase, ProtocolState, Strategy
from volume_bot.exceptions import ValidationError
from volume_bot.models.classifier import (
    ClassifierConfig,
    ClassifierStatus,
    ClassifierThresholds,
    LiquidityMetrics,
    MetricsSnapshot,
    PriceMetrics,
    SupplyMetrics,
    VolumeMetrics,
)
from volume_bot.utils.logger import logger_manager, log_function

logger = logger_manager.setup_logger(__name__)

StatusListener = Callable[[ClassifierStatus], None]
TokenListener = Callable[[str], None]


def _num(value: Any, default: float = 0.0) -> float:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return default
    return n if math.isfinite(n) else default


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in data and data[k] is not None:
            return data[k]
    return None


def normalize_metrics(raw: Mapping[str, Any] | None) -> MetricsSnapshot:
    """Acepta las variantes de payload conocidas y devuelve siempre la misma forma."""
    raw = raw or {}

    price_raw = raw.get("price")
    if isinstance(price_raw, Mapping):
        price = PriceMetrics(
            current=_num(_pick(price_raw, "current", "value")),
            change1m=_num(_pick(price_raw, "change1m", "change_1m")),
            change5m=_num(_pick(price_raw, "change5m", "change_5m")),
            change1h=_num(_pick(price_raw, "change1h", "change_1h")),
        )
    else:
        # precio numérico suelto, los cambios pueden venir en la raíz
        price = PriceMetrics(
            current=_num(price_raw),
            change1m=_num(_pick(raw, "change1m", "priceChange1m")),
            change5m=_num(_pick(raw, "change5m", "priceChange5m")),
            change1h=_num(_pick(raw, "change1h", "priceChange1h")),
        )

    volume_raw = raw.get("volume")
    if isinstance(volume_raw, Mapping):
        vol5m = _num(_pick(volume_raw, "vol5m", "m5", "five_min"))
    else:
        vol5m = _num(_pick(raw, "vol5m", "volume5m"))

    liquidity_raw = raw.get("liquidity") if isinstance(raw.get("liquidity"), Mapping) else {}
    lp_health = raw.get("lpHealth") if isinstance(raw.get("lpHealth"), Mapping) else {}
    reserves = raw.get("reserves") if isinstance(raw.get("reserves"), Mapping) else {}
    sol = _pick(liquidity_raw, "sol")
    if sol is None:
        sol = _pick(lp_health, "solReserve")
    if sol is None:
        sol = _pick(reserves, "quoteAmount")
    score = _pick(liquidity_raw, "score")
    if score is None:
        score = _pick(lp_health, "score")

    supply_raw = raw.get("supply")
    if isinstance(supply_raw, Mapping):
        circulating = _num(_pick(supply_raw, "circulating", "total"))
    else:
        circulating = _num(supply_raw)

    return MetricsSnapshot(
        price=price,
        volume=VolumeMetrics(vol5m=vol5m),
        liquidity=LiquidityMetrics(sol=_num(sol), score=None if score is None else _num(score)),
        supply=SupplyMetrics(circulating=circulating),
        holders=int(_num(_pick(raw, "holders", "holderCount"))),
        migration_detected=bool(_pick(raw, "migrationDetected", "migration_detected") or False),
    )


def determine_phase(metrics: MetricsSnapshot, config: ClassifierConfig) -> Phase:
    if metrics.migration_detected or config.force_amm:
        return Phase.AMM_POOL
    if config.force_bonding:
        return Phase.BONDING_CURVE
    return Phase.BONDING_CURVE


def classify_protocol_state(metrics: MetricsSnapshot, thresholds: ClassifierThresholds) -> ProtocolState:
    change5m = metrics.price.change5m
    liquidity = metrics.liquidity.score if metrics.liquidity.score is not None else metrics.liquidity.sol

    if change5m >= thresholds.momentum_change_pct and metrics.volume.vol5m > 0 and metrics.holders > 10:
        return ProtocolState.BUILDING_MOMENTUM
    if change5m <= thresholds.stabilization_drop_pct or liquidity < thresholds.lp_health_floor:
        return ProtocolState.STABILIZING_PRICE
    if metrics.supply.circulating > 0 and liquidity >= thresholds.lp_health_floor:
        return ProtocolState.CAPTURING_SPREAD
    return ProtocolState.STABILIZING_PRICE


def select_strategy(phase: Phase, state: ProtocolState) -> Strategy:
    if phase == Phase.BONDING_CURVE:
        return Strategy.DBPM
    if state == ProtocolState.STABILIZING_PRICE:
        return Strategy.PLD
    if state == ProtocolState.CAPTURING_SPREAD:
        return Strategy.CMWA
    return Strategy.DBPM


_Key = Tuple[str, Optional[str]]


class _Tracked:
    __slots__ = ("status", "last_emit", "last_key", "has_metrics")

    def __init__(self, status: ClassifierStatus) -> None:
        self.status = status
        self.last_emit = 0.0
        self.last_key: Optional[tuple] = None
        self.has_metrics = False


class StatusClassifier:
    """
    Seguimiento por (token, sesión).

    Dos sesiones sobre el mismo token tienen cada una su propia entrada: su
    config, su debounce y su bandera de emergencia. Sin ``session_id`` la
    entrada es la del token a secas.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._sessions: Dict[_Key, _Tracked] = {}
        self._lock = threading.RLock()
        self._status_listeners: List[StatusListener] = []
        self._emergency_listeners: List[TokenListener] = []
        self._ended_listeners: List[TokenListener] = []

    # ---------- listeners ----------
    def on_status_update(self, fn: StatusListener) -> Callable[[], None]:
        return self._register(self._status_listeners, fn)

    def on_emergency_stop(self, fn: TokenListener) -> Callable[[], None]:
        return self._register(self._emergency_listeners, fn)

    def on_session_ended(self, fn: TokenListener) -> Callable[[], None]:
        return self._register(self._ended_listeners, fn)

    def _register(self, bucket: list, fn) -> Callable[[], None]:
        with self._lock:
            bucket.append(fn)

        def _off() -> None:
            with self._lock:
                if fn in bucket:
                    bucket.remove(fn)
        return _off

    def _notify(self, bucket: list, arg) -> None:
        with self._lock:
            listeners = list(bucket)
        for fn in listeners:
            try:
                fn(arg)
            except Exception as e:
                logger.exception(f"Listener del clasificador falló: {e}")

    # ---------- API ----------
    @log_function
    def engage(self, token_mint: str, config: ClassifierConfig | None = None,
               session_id: str | None = None) -> ClassifierStatus:
        if not token_mint:
            raise ValidationError("token_mint es obligatorio")
        key = (token_mint, session_id)
        with self._lock:
            tracked = self._sessions.get(key)
            if tracked:
                return tracked.status
            config = config or ClassifierConfig()
            phase = Phase.AMM_POOL if config.force_amm else Phase.BONDING_CURVE
            status = ClassifierStatus(
                token_mint=token_mint,
                session_id=session_id,
                phase=phase,
                protocol_state=ProtocolState.BUILDING_MOMENTUM,
                strategy=select_strategy(phase, ProtocolState.BUILDING_MOMENTUM),
                config=config,
                timestamp=self._clock(),
            )
            self._sessions[key] = _Tracked(status)
        logger.info(f"Clasificador enganchado a {token_mint} (fase={phase.value}, sesión={session_id or '-'})")
        return status

    @log_function
    def disengage(self, token_mint: str, session_id: str | None = None) -> bool:
        with self._lock:
            tracked = self._sessions.pop((token_mint, session_id), None)
        if tracked is None:
            return False
        logger.info(f"Clasificador liberado para {token_mint} (sesión={session_id or '-'})")
        self._notify(self._ended_listeners, token_mint)
        return True

    def update_metrics(self, token_mint: str, raw: Mapping[str, Any] | None,
                       session_id: str | None = None) -> Optional[ClassifierStatus]:
        """
        Reclasifica con un snapshot nuevo. Sin ``session_id`` se aplica a todas
        las entradas del token; devuelve el último estado calculado.
        """
        metrics = normalize_metrics(raw)
        emitted: List[ClassifierStatus] = []
        last: Optional[ClassifierStatus] = None
        with self._lock:
            now = self._clock()
            for key in self._keys_for(token_mint, session_id):
                tracked = self._sessions[key]
                config = tracked.status.config
                phase = determine_phase(metrics, config)
                state = classify_protocol_state(metrics, config.thresholds)
                strategy = select_strategy(phase, state)
                status = tracked.status.model_copy(update={
                    "phase": phase,
                    "protocol_state": state,
                    "strategy": strategy,
                    "metrics": metrics,
                    "timestamp": now,
                })
                tracked.status = status
                tracked.has_metrics = True
                last = status

                changed = (phase, state, strategy) != tracked.last_key
                if changed:
                    logger.info(f"{token_mint}: {phase.value} / {state.value} → {strategy.value}")
                if changed or (now - tracked.last_emit) * 1000 >= config.emit_interval_ms:
                    tracked.last_key = (phase, state, strategy)
                    tracked.last_emit = now
                    emitted.append(status)

        for status in emitted:
            self._notify(self._status_listeners, status)
        return last

    def _keys_for(self, token_mint: str, session_id: str | None) -> List[_Key]:
        if session_id is not None:
            key = (token_mint, session_id)
            return [key] if key in self._sessions else []
        return [k for k in self._sessions if k[0] == token_mint]

    def get_status(self, token_mint: str, session_id: str | None = None) -> Optional[ClassifierStatus]:
        with self._lock:
            tracked = self._sessions.get((token_mint, session_id))
            return tracked.status if tracked else None

    def get_recommended_strategy(self, token_mint: str, fallback: Strategy = Strategy.DBPM,
                                 session_id: str | None = None) -> Strategy:
        """Estrategia actual; ``fallback`` si aún no han llegado métricas."""
        with self._lock:
            tracked = self._sessions.get((token_mint, session_id))
            if tracked is None or not tracked.has_metrics:
                return fallback
            return tracked.status.strategy

    @log_function
    def emergency_stop(self, token_mint: str, session_id: str | None = None) -> bool:
        """Bandera pegajosa. Sin ``session_id`` marca todas las entradas del token."""
        with self._lock:
            keys = self._keys_for(token_mint, session_id)
            for key in keys:
                tracked = self._sessions[key]
                tracked.status = tracked.status.model_copy(update={"emergency_stopped": True})
        if not keys:
            return False
        logger.warning(f"Parada de emergencia en clasificador para {token_mint} (sesión={session_id or 'todas'})")
        self._notify(self._emergency_listeners, token_mint)
        return True

    def is_emergency_stopped(self, token_mint: str, session_id: str | None = None) -> bool:
        with self._lock:
            tracked = self._sessions.get((token_mint, session_id))
            return bool(tracked and tracked.status.emergency_stopped)

    def list_sessions(self) -> List[ClassifierStatus]:
        with self._lock:
            return [t.status for t in self._sessions.values()]
