import pytest

from volume_bot.enums.event_type import StreamEventType, TriggerType
from volume_bot.models.events import ParsedTransaction, StreamEvent
from volume_bot.models.risk import RiskSettings
from volume_bot.orchestrators.risk_manager import RiskManager
from volume_bot.repositories.execution_repository import RiskExecutionRepository
from volume_bot.services.allocation_planner import AllocationPlanner
from tests.conftest import MINT, USER


class Clock:
    def __init__(self, now=10_000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_risk(executor, wallets, clock=None, settings=None, repo=None, on_emergency=None, interval=0.0):
    return RiskManager(
        session_id="sess-1",
        user_id=USER,
        token_mint=MINT,
        wallets=wallets,
        executor=executor,
        planner=AllocationPlanner(),
        settings=settings or RiskSettings(),
        repo=repo,
        on_emergency=on_emergency,
        clock=clock or Clock(),
        min_execution_interval=interval,
        async_execution=False,
    )


def test_emergency_fires_once_and_stops_monitoring(executor, wallets, venue, tmp_path):
    repo = RiskExecutionRepository(str(tmp_path / "risk.db"))
    emergencies = []
    risk = make_risk(executor, wallets, repo=repo, on_emergency=emergencies.append)
    risk.start(entry_price=1.0, position_tokens=300)

    assert risk.update_price(0.49) == TriggerType.EMERGENCY_STOP
    state = risk.get_state()
    assert state.triggers.emergency_stop
    assert not state.is_monitoring
    assert emergencies == ["sess-1"]
    assert len(venue.sells) == len(wallets)

    assert risk.update_price(0.30) is None
    assert len(venue.sells) == len(wallets)

    [row] = repo.list_for_session("sess-1")
    assert row["trigger_type"] == "emergency_stop"
    assert row["success"] == 1


def test_take_profit_then_trailing_stop(executor, wallets):
    fired = []
    risk = make_risk(executor, wallets)
    risk.on_trigger(lambda ex: fired.append((ex.trigger, ex.sell_percent, ex.success)))
    risk.start(entry_price=1.0, position_tokens=300)

    assert risk.update_price(1.6) == TriggerType.TAKE_PROFIT
    assert risk.get_state().trailing_stop_price == pytest.approx(1.44)
    assert risk.update_price(1.4) == TriggerType.TRAILING_STOP
    assert risk.update_price(2.0) is None

    assert fired == [
        (TriggerType.TAKE_PROFIT, 50, True),
        (TriggerType.TRAILING_STOP, 100.0, True),
    ]


def test_take_profit_is_one_shot(executor, wallets):
    risk = make_risk(executor, wallets, settings=RiskSettings(trailing_stop_enabled=False))
    risk.start(entry_price=1.0, position_tokens=300)

    assert risk.update_price(1.6) == TriggerType.TAKE_PROFIT
    assert risk.update_price(1.7) is None
    assert risk.update_price(1.8) is None


def test_cooldown_delays_second_trigger(executor, wallets):
    clock = Clock()
    risk = make_risk(executor, wallets, clock=clock, interval=5)
    risk.start(entry_price=1.0, position_tokens=300)

    assert risk.update_price(1.6) == TriggerType.TAKE_PROFIT
    clock.now += 1
    assert risk.update_price(1.4) is None
    clock.now += 5
    assert risk.update_price(1.4) == TriggerType.TRAILING_STOP


def test_stale_price_is_not_acted_on(executor, wallets, venue):
    clock = Clock()
    risk = make_risk(executor, wallets, clock=clock)
    risk.start(entry_price=1.0, position_tokens=300)

    assert risk.update_price(0.3, observed_at=clock.now - 120) is None
    assert venue.sells == []
    assert not risk.get_state().triggers.emergency_stop


def test_stop_loss_when_emergency_disabled(executor, wallets):
    risk = make_risk(executor, wallets, settings=RiskSettings(emergency_stop_enabled=False))
    risk.start(entry_price=1.0, position_tokens=300)
    assert risk.update_price(0.75) == TriggerType.STOP_LOSS


def test_own_buys_set_weighted_entry_price(executor, wallets):
    risk = make_risk(executor, wallets)
    risk.start()
    risk.record_buy(100, 1.0)
    risk.record_buy(100, 3.0)
    assert risk.get_state().entry_price == pytest.approx(0.02)

    risk.record_sell(50)
    state = risk.get_state()
    assert state.position_tokens == pytest.approx(150)
    assert state.entry_price == pytest.approx(0.02)

    risk.record_sell(500)
    assert not risk.get_state().is_monitoring


def test_stream_events_feed_position_and_price(executor, wallets, venue):
    clock = Clock()
    risk = make_risk(executor, wallets, clock=clock)
    risk.start()
    buy = ParsedTransaction(signature="s1", type="buy", token_amount=300, sol_amount=300, is_own_wallet=True,
                            wallet="PK0")
    foreign = ParsedTransaction(signature="s2", type="buy", token_amount=1000, sol_amount=10)
    risk.handle_stream_event(StreamEvent(type=StreamEventType.TRANSACTION, transaction=buy))
    risk.handle_stream_event(StreamEvent(type=StreamEventType.TRANSACTION, transaction=foreign))
    assert risk.get_state().entry_price == pytest.approx(1.0)

    risk.handle_stream_event(StreamEvent(type=StreamEventType.PRICE_CHANGE, data={"new_price": 0.4},
                                         timestamp=clock.now))
    assert risk.get_state().triggers.emergency_stop
    assert venue.sells


def test_manual_emergency_stop_only_once(executor, wallets):
    risk = make_risk(executor, wallets)
    risk.start(entry_price=1.0, position_tokens=300)
    risk.update_price(1.0)
    assert risk.manual_emergency_stop() is True
    assert risk.manual_emergency_stop() is False


def test_no_tokens_records_failed_execution(executor, wallets, balances):
    balances.tokens.clear()
    fired = []
    risk = make_risk(executor, wallets)
    risk.on_trigger(fired.append)
    risk.start(entry_price=1.0, position_tokens=300)

    risk.update_price(0.4)
    assert fired[0].success is False
    assert fired[0].error == "no_tokens"


def test_update_settings_changes_thresholds(executor, wallets):
    risk = make_risk(executor, wallets)
    risk.update_settings(take_profit_percent=5)
    risk.start(entry_price=1.0, position_tokens=300)
    assert risk.update_price(1.06) == TriggerType.TAKE_PROFIT


def test_prices_before_the_first_buy_do_not_arm_trailing_stop(executor, wallets, venue):
    risk = make_risk(executor, wallets)
    risk.start()

    # ajenos empujan el precio antes de que abramos posición
    assert risk.update_price(3.0) is None
    assert risk.get_state().highest_price == 0.0

    risk.record_buy(100, 100.0)
    state = risk.get_state()
    assert state.entry_price == pytest.approx(1.0)
    assert state.highest_price == pytest.approx(1.0)
    assert state.lowest_price == pytest.approx(1.0)

    assert risk.update_price(1.25) is None
    state = risk.get_state()
    assert state.highest_price == pytest.approx(1.25)
    assert state.trailing_stop_price == pytest.approx(1.125)
    assert venue.sells == []


def test_start_with_entry_price_resets_high_water_mark(executor, wallets):
    risk = make_risk(executor, wallets)
    risk.state.highest_price = 5.0
    risk.start(entry_price=1.0, position_tokens=300)
    assert risk.get_state().highest_price == 1.0
    assert risk.update_price(1.3) is None
