import random
import threading
import time

import pytest

from volume_bot.controllers.trade_executor import TradeExecutor
from volume_bot.enums.event_type import EventType
from volume_bot.enums.session_status import SessionStatus
from volume_bot.enums.strategy import Platform, Strategy, TradeIntent, WalletRole
from volume_bot.exceptions import SessionStateError, ValidationError
from volume_bot.models.execution import ExecutionRecord
from volume_bot.models.plan import AllocationPlan, WalletRecord
from volume_bot.models.session import VolumeBotSettings
from volume_bot.orchestrators.session_manager import PositionBook, SessionManager, rules_from_settings
from volume_bot.repositories.execution_repository import ExecutionRepository
from volume_bot.repositories.session_repository import SessionRepository
from volume_bot.repositories.settings_repository import SettingsRepository
from volume_bot.services.allocation_planner import AllocationPlanner
from volume_bot.services.event_bus import EventBus
from volume_bot.services.status_classifier import StatusClassifier
from tests.conftest import MINT, USER, FakeBalances, FakeCustody, FakeFeeCollector, FakePrice, FakeVenue, make_wallets


class RejectingPlanner(AllocationPlanner):
    def generate_execution_plan(self, *args, **kwargs):
        return AllocationPlan(success=False, error="rule_violation", message="Reglas violadas: buy_pressure_volume",
                              violations=["buy_pressure_volume"])


class Harness:
    def __init__(self, tmp_path, planner=None, wallets=None, venue=None):
        db = str(tmp_path / "sessions.db")
        self.wallets = wallets or make_wallets(1)
        self.custody = FakeCustody(self.wallets)
        self.venue = venue or FakeVenue()
        self.bus = EventBus()
        self.session_repo = SessionRepository(db)
        self.execution_repo = ExecutionRepository(db)
        self.classifier = StatusClassifier()
        self.manager = SessionManager(
            session_repo=self.session_repo,
            settings_repo=SettingsRepository(db),
            execution_repo=self.execution_repo,
            classifier=self.classifier,
            planner=planner or AllocationPlanner(rng=random.Random(1)),
            executor=TradeExecutor(
                custody=self.custody,
                venues={Platform.PUMPFUN: self.venue, Platform.JUPITER: self.venue},
                fee_collector=FakeFeeCollector(),
                balances=FakeBalances({w.public_key: 1000.0 for w in self.wallets}),
                price_source=FakePrice(),
            ),
            custody=self.custody,
            event_bus=self.bus,
            rng=random.Random(1),
            stop_join_timeout=5,
        )
        self.events = []
        self._cond = threading.Condition()
        self.bus.subscribe(MINT, self._record)

    def _record(self, event):
        with self._cond:
            self.events.append(event)
            self._cond.notify_all()

    def wait_event(self, event_type, timeout=5.0):
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                found = [e for e in self.events if e.type == event_type]
                if found:
                    return found[0]
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise AssertionError(f"{event_type.value} not emitted")
                self._cond.wait(remaining)

    def types(self):
        with self._cond:
            return [e.type for e in self.events]


def settings(**kw):
    base = dict(
        user_id=USER, token_mint=MINT, target_volume_sol=0.2, min_tx_sol=0.1, max_tx_sol=0.1,
        active_wallet_count=1, trade_interval_ms=20, randomize_amounts=False, randomize_timing=False,
        min_sol_balance=0.0,
    )
    base.update(kw)
    return VolumeBotSettings(**base)


@pytest.fixture
def harness(tmp_path):
    h = Harness(tmp_path)
    yield h
    h.manager.shutdown()


def test_session_runs_until_target_and_completes(harness):
    session = harness.manager.start_session(USER, MINT, settings=settings())
    stopped = harness.wait_event(EventType.SESSION_STOPPED)

    assert stopped.data["status"] == "completed"
    stored = harness.session_repo.get(session.id)
    assert stored.status == SessionStatus.COMPLETED
    assert stored.executed_volume == pytest.approx(0.2)
    assert stored.trades_count == 2
    assert stored.stop_reason == "target_reached"
    assert len(harness.venue.buys) == 2
    # 2 compras de 0.1 SOL a 0.001 con un 2% de comisión cada una
    assert stored.entry_price == pytest.approx(0.001)
    assert stored.fees_paid == pytest.approx(0.004)
    assert stored.pnl == pytest.approx(-0.004)

    types = harness.types()
    assert types[0] == EventType.SESSION_STARTED
    assert types[-1] == EventType.SESSION_STOPPED
    assert types.count(EventType.TRADE_EXECUTED) == 2
    assert harness.manager.list_active_sessions(USER) == []


def test_stop_session_is_final(harness):
    session = harness.manager.start_session(USER, MINT, settings=settings(target_volume_sol=10, trade_interval_ms=60_000))
    harness.wait_event(EventType.STATUS_UPDATE)

    assert harness.manager.stop_session(session.id) is True
    stored = harness.session_repo.get(session.id)
    assert stored.status == SessionStatus.STOPPED
    events_after_stop = len(harness.events)

    assert harness.manager.stop_session(session.id) is False
    time.sleep(0.1)
    assert len(harness.events) == events_after_stop
    assert harness.session_repo.get(session.id).executed_volume == pytest.approx(stored.executed_volume)
    assert harness.classifier.get_status(MINT) is None


def test_duplicate_start_is_rejected(harness):
    harness.manager.start_session(USER, MINT, settings=settings(target_volume_sol=10, trade_interval_ms=60_000))
    with pytest.raises(SessionStateError):
        harness.manager.start_session(USER, MINT, settings=settings())


def test_start_requires_wallets(tmp_path):
    h = Harness(tmp_path, wallets=make_wallets(1, user_id="someone-else"))
    with pytest.raises(ValidationError, match="wallets"):
        h.manager.start_session(USER, MINT, settings=settings())


def test_rule_violation_skips_cycle_but_keeps_session_running(tmp_path):
    h = Harness(tmp_path, planner=RejectingPlanner())
    try:
        session = h.manager.start_session(USER, MINT, settings=settings(trade_interval_ms=60_000))
        error = h.wait_event(EventType.ERROR)

        assert error.data["error"] == "rule_violation"
        assert error.data["violations"] == ["buy_pressure_volume"]
        assert EventType.RULE_TRIGGERED in h.types()
        assert h.session_repo.get(session.id).status == SessionStatus.RUNNING
        assert h.venue.buys == []
    finally:
        h.manager.shutdown()


def test_emergency_stop_marks_session(harness):
    session = harness.manager.start_session(USER, MINT, settings=settings(target_volume_sol=10, trade_interval_ms=60_000))
    harness.wait_event(EventType.STATUS_UPDATE)

    assert harness.manager.emergency_stop(session.id) is True
    assert harness.session_repo.get(session.id).status == SessionStatus.EMERGENCY_STOPPED
    types = harness.types()
    assert types.index(EventType.EMERGENCY_STOP) < types.index(EventType.SESSION_STOPPED)


def test_pause_and_resume(harness):
    session = harness.manager.start_session(USER, MINT, settings=settings(target_volume_sol=10, trade_interval_ms=60_000))

    assert harness.manager.pause_session(session.id) is True
    assert harness.session_repo.get(session.id).status == SessionStatus.PAUSED
    assert harness.manager.pause_session(session.id) is False
    assert harness.manager.resume_session(session.id) is True
    assert harness.session_repo.get(session.id).status == SessionStatus.RUNNING


def test_status_snapshot_includes_recent_executions(harness):
    session = harness.manager.start_session(USER, MINT, settings=settings(target_volume_sol=10, trade_interval_ms=60_000))
    harness.wait_event(EventType.STATUS_UPDATE)

    status = harness.manager.get_session_status(session.id)
    assert status["session"]["id"] == session.id
    assert status["recent_executions"]
    assert status["classifier"]["token_mint"] == MINT
    assert harness.manager.get_session_status("missing") is None


def test_settings_validation_and_persistence(harness):
    with pytest.raises(ValidationError):
        harness.manager.save_settings(settings(min_tx_sol=0.5, max_tx_sol=0.1))

    harness.manager.save_settings(settings(target_volume_sol=5, strategy=Strategy.PLD))
    stored = harness.manager.get_settings(USER, MINT)
    assert stored.target_volume_sol == 5
    assert stored.strategy == Strategy.PLD
    assert harness.manager.get_settings(USER, "other").target_volume_sol == 1.0


def test_rules_follow_settings():
    rules = rules_from_settings(settings(active_wallet_count=4, max_tx_sol=0.3, max_price_drop_percent=12))
    assert (rules.initial_wallet_count, rules.buy_pressure_volume, rules.global_stop_loss) == (4, 0.3, 12)


class FakeStream:
    def __init__(self, token_mint, wallets):
        self.token_mint = token_mint
        self.wallets = wallets
        self.listeners = []
        self.started = False
        self.disconnected = False

    def add_listener(self, fn):
        self.listeners.append(fn)
        return lambda: self.listeners.remove(fn) if fn in self.listeners else None

    @property
    def is_connected(self):
        return self.started and not self.disconnected

    def start(self):
        self.started = True

    def disconnect(self):
        self.disconnected = True

    def push(self, event):
        for fn in list(self.listeners):
            fn(event)


def test_risk_emergency_stops_the_session(tmp_path):
    from volume_bot.enums.event_type import StreamEventType
    from volume_bot.models.events import ParsedTransaction, StreamEvent

    h = Harness(tmp_path)
    streams = []

    def factory(mint, wallets):
        streams.append(FakeStream(mint, wallets))
        return streams[-1]

    h.manager.stream_factory = factory
    try:
        session = h.manager.start_session(
            USER, MINT, settings=settings(target_volume_sol=10, trade_interval_ms=60_000, smart_profit_enabled=True),
        )
        [stream] = streams
        assert stream.started and stream.wallets == ["PK0"]

        own_buy = ParsedTransaction(signature="s", type="buy", token_amount=1000, sol_amount=1.0,
                                    wallet="PK0", is_own_wallet=True)
        stream.push(StreamEvent(type=StreamEventType.TRANSACTION, transaction=own_buy))
        stream.push(StreamEvent(type=StreamEventType.PRICE_CHANGE, data={"new_price": 0.0004}))

        stopped = h.wait_event(EventType.SESSION_STOPPED)
        assert stopped.data["status"] == "emergency_stopped"
        assert h.session_repo.get(session.id).status == SessionStatus.EMERGENCY_STOPPED
        assert any(e.type == EventType.RULE_TRIGGERED and e.data.get("trigger") == "emergency_stop"
                   for e in h.events)
        assert h.venue.sells
        assert stream.disconnected
    finally:
        h.manager.shutdown()


def test_stop_during_a_batch_keeps_the_trades_already_sent(tmp_path):
    h = Harness(tmp_path, venue=FakeVenue(delay=0.5))
    try:
        session = h.manager.start_session(USER, MINT, settings=settings(target_volume_sol=10, trade_interval_ms=60_000))
        time.sleep(0.1)

        assert h.manager.stop_session(session.id) is True

        assert len(h.venue.buys) == 1
        [logged] = h.execution_repo.list_for_session(session.id)
        assert logged["outcome"] == "success"
        assert logged["notional"] == pytest.approx(0.1)
        stored = h.session_repo.get(session.id)
        assert stored.status == SessionStatus.STOPPED
        assert stored.executed_volume == pytest.approx(0.1)
        assert stored.trades_count == 1
        types = h.types()
        assert types.index(EventType.TRADE_EXECUTED) < types.index(EventType.SESSION_STOPPED)
    finally:
        h.manager.shutdown()


def test_two_users_on_one_token_do_not_share_classifier_state(tmp_path):
    bob_wallet = WalletRecord(id="b0", user_id="bob", public_key="PKB0")
    h = Harness(tmp_path, wallets=make_wallets(1) + [bob_wallet])
    try:
        quiet = dict(target_volume_sol=10, trade_interval_ms=60_000)
        alice = h.manager.start_session(USER, MINT, settings=settings(**quiet))
        bob = h.manager.start_session("bob", MINT, settings=settings(user_id="bob", platform=Platform.JUPITER, **quiet))

        bob_status = h.classifier.get_status(MINT, session_id=bob.id)
        assert bob_status.config.force_amm
        assert not h.classifier.get_status(MINT, session_id=alice.id).config.force_amm

        assert h.manager.emergency_stop(alice.id) is True
        assert h.session_repo.get(alice.id).status == SessionStatus.EMERGENCY_STOPPED
        assert h.classifier.get_status(MINT, session_id=alice.id) is None

        assert not h.classifier.is_emergency_stopped(MINT, session_id=bob.id)
        assert h.classifier.get_status(MINT, session_id=bob.id) is not None
        assert h.session_repo.get(bob.id).status == SessionStatus.RUNNING
    finally:
        h.manager.shutdown()


def test_position_book_tracks_entry_and_pnl():
    def fill(intent, notional, price, sold_tokens=None):
        return ExecutionRecord(wallet_id="w0", public_key="PK0", role=WalletRole.ENTRY, intent=intent,
                               volume=notional, notional=notional, price=price, sold_tokens=sold_tokens,
                               success=True)

    book = PositionBook()
    book.apply(fill(TradeIntent.BUY, 0.1, 0.001))
    book.apply(fill(TradeIntent.BUY, 0.1, 0.001))
    assert book.entry_price == pytest.approx(0.001)

    book.apply(fill(TradeIntent.SELL, 0.2, 0.002, sold_tokens=100))
    assert book.realized == pytest.approx(0.1)
    assert book.entry_price == pytest.approx(0.001)
    # 100 tokens restantes a 0.002 frente a 0.1 de coste
    assert book.pnl(fees=0.01) == pytest.approx(0.19)

    failed = fill(TradeIntent.BUY, 5.0, 0.001)
    failed.success = False
    book.apply(failed)
    assert book.tokens == pytest.approx(100)
