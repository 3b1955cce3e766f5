"""
Wiring of the engine from ``config.yaml`` + environment.
"""

from __future__ import annotations

import random
import threading
from typing import Any, Dict, List, Optional

from volume_bot.controllers.trade_executor import TradeExecutor
from volume_bot.exceptions import ValidationError, VolumeBotError
from volume_bot.models.session import VolumeBotSettings
from volume_bot.orchestrators.session_manager import SessionManager
from volume_bot.repositories.execution_repository import ExecutionRepository, RiskExecutionRepository
from volume_bot.repositories.session_repository import SessionRepository
from volume_bot.repositories.settings_repository import SettingsRepository
from volume_bot.services.allocation_planner import AllocationPlanner
from volume_bot.services.balance_service import RpcBalanceService
from volume_bot.services.custody_service import HttpWalletCustody
from volume_bot.services.event_bus import EventBus
from volume_bot.services.fee_service import PlatformFeeCollector
from volume_bot.services.market_service import MarketService
from volume_bot.services.status_classifier import StatusClassifier
from volume_bot.services.stream_client import StreamClient
from volume_bot.services.venue_service import build_venues
from volume_bot.utils.config import section
from volume_bot.utils.logger import logger_manager

logger = logger_manager.setup_logger(__name__)


def build_manager(config: Dict[str, Any]) -> SessionManager:
    engine = section(config, "engine")
    db_path: Optional[str] = engine.get("db_path")
    seed = engine.get("random_seed")
    rng = random.Random(seed) if seed is not None else random.Random()

    market = MarketService()
    custody = HttpWalletCustody()
    executor = TradeExecutor(
        custody=custody,
        venues=build_venues(dry_run=engine.get("dry_run")),
        fee_collector=PlatformFeeCollector(),
        balances=RpcBalanceService(),
        price_source=market,
        call_timeout=float(engine.get("call_timeout_secs", 45)),
    )
    return SessionManager(
        session_repo=SessionRepository(db_path),
        settings_repo=SettingsRepository(db_path),
        execution_repo=ExecutionRepository(db_path),
        classifier=StatusClassifier(),
        planner=AllocationPlanner(rng=rng),
        executor=executor,
        custody=custody,
        event_bus=EventBus(),
        market=market,
        risk_repo=RiskExecutionRepository(db_path),
        stream_factory=lambda mint, wallets: StreamClient(mint, wallets),
        rng=rng,
    )


def _log_event(event) -> None:
    logger.info(f"[{event.type.value}] {event.session_id or '-'} {event.data}")


def start_configured_sessions(manager: SessionManager, config: Dict[str, Any]) -> List[str]:
    """Arranca las sesiones listadas en ``sessions:``; devuelve sus ids."""
    started: List[str] = []
    for entry in config.get("sessions") or []:
        if not isinstance(entry, dict) or not entry.get("user_id") or not entry.get("token_mint"):
            raise ValidationError(f"Entrada de sesión inválida: {entry!r}")
        overrides = {k: v for k, v in entry.items() if k not in ("user_id", "token_mint")}
        settings = manager.get_settings(entry["user_id"], entry["token_mint"])
        if overrides:
            settings = manager.save_settings(VolumeBotSettings(**{**settings.model_dump(), **overrides}))
        manager.subscribe(entry["token_mint"], _log_event)
        try:
            session = manager.start_session(entry["user_id"], entry["token_mint"], settings=settings)
        except VolumeBotError as e:
            logger.error(f"No se pudo arrancar {entry['token_mint']}: {e}")
            continue
        started.append(session.id)
    return started


def run(config: Dict[str, Any], stop_event: threading.Event) -> None:
    manager = build_manager(config)
    ids = start_configured_sessions(manager, config)
    logger.info(f"{len(ids)} sesiones en marcha")
    try:
        while not stop_event.is_set():
            stop_event.wait(0.5)
    finally:
        manager.shutdown()
