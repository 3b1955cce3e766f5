import random

import pytest

from volume_bot.enums.strategy import Strategy, TradeIntent, WalletRole
from volume_bot.exceptions import ValidationError
from volume_bot.models.plan import PlanRules, WalletRecord
from volume_bot.services.allocation_planner import (
    AllocationPlanner,
    PLAN_TTL_SECONDS,
    check_rules,
    normalize_volume,
    split_volume_random,
    to_execution_plan,
)
from tests.conftest import MINT, USER, make_wallets


@pytest.fixture
def planner():
    return AllocationPlanner(rng=random.Random(7))


def test_dbpm_slices_sum_to_total_and_use_each_wallet_once(planner):
    wallets = make_wallets(5)
    plan = planner.generate_execution_plan(Strategy.DBPM, wallets, 0.4, PlanRules(), MINT, USER)

    assert plan.success
    assert sum(a.amount for a in plan.allocation) == pytest.approx(0.4)
    assert sorted(a.wallet.id for a in plan.allocation) == sorted(w.id for w in wallets)
    assert all(a.amount >= 0 for a in plan.allocation)
    assert all(not t.concurrency for t in plan.transactions)


def test_bullish_bonding_curve_alternates_entry_and_exit(planner):
    plan = planner.generate_execution_plan(
        Strategy.DBPM, make_wallets(3), 0.3, PlanRules(buy_pressure_volume=0.5), MINT, USER,
    )

    assert plan.success
    assert [a.role for a in plan.allocation] == [WalletRole.ENTRY, WalletRole.EXIT, WalletRole.ENTRY]
    assert [t.intent for t in plan.transactions] == [TradeIntent.BUY, TradeIntent.SELL, TradeIntent.BUY]
    assert plan.summary.total_volume == pytest.approx(0.3)
    assert plan.summary.roles == {"entry": 2, "exit": 1}


def test_defensive_pld_splits_evenly_and_alternates_intent(planner):
    plan = planner.generate_execution_plan(
        Strategy.PLD, make_wallets(2), 1.0, PlanRules(buy_pressure_volume=1.0), MINT, USER,
    )

    assert plan.success
    assert [a.role for a in plan.allocation] == [WalletRole.LIQUIDITY, WalletRole.LIQUIDITY]
    assert [a.amount for a in plan.allocation] == [0.5, 0.5]
    assert [t.intent for t in plan.transactions] == [TradeIntent.BUY, TradeIntent.SELL]
    assert all(t.concurrency for t in plan.transactions)


def test_cmwa_pairs_arbitrage_roles(planner):
    plan = planner.generate_execution_plan(
        Strategy.CMWA, make_wallets(4), 0.4, PlanRules(), MINT, USER,
    )

    assert plan.success
    roles = [a.role for a in plan.allocation]
    assert roles == [WalletRole.ARBITRAGE_BUY, WalletRole.ARBITRAGE_SELL] * 2
    assert [t.intent for t in plan.transactions] == [TradeIntent.BUY, TradeIntent.SELL] * 2


def test_volume_above_cap_rejects_whole_plan(planner):
    plan = planner.generate_execution_plan(
        Strategy.DBPM, make_wallets(3), 0.6, PlanRules(buy_pressure_volume=0.5), MINT, USER,
    )

    assert not plan.success
    assert plan.error == "rule_violation"
    assert "buy_pressure_volume" in plan.violations
    assert plan.transactions == []
    assert plan.allocation == []


def test_too_many_wallets_is_a_rule_violation(planner):
    plan = planner.generate_execution_plan(
        Strategy.PLD, make_wallets(4), 0.2, PlanRules(initial_wallet_count=3), MINT, USER,
    )
    assert plan.error == "rule_violation"
    assert plan.violations == ["initial_wallet_count"]


def test_unknown_strategy_or_no_wallets_fails_allocation(planner):
    bad = planner.generate_execution_plan("XYZ", make_wallets(2), 0.1, PlanRules(), MINT, USER)
    empty = planner.generate_execution_plan(Strategy.DBPM, [], 0.1, PlanRules(), MINT, USER)

    assert bad.error == "allocation_failed"
    assert empty.error == "allocation_failed"
    assert bad.transactions == [] and empty.transactions == []


def test_duplicate_wallets_are_rejected(planner):
    w = make_wallets(1)[0]
    plan = planner.generate_execution_plan(Strategy.PLD, [w, w], 0.1, PlanRules(), MINT, USER)
    assert plan.error == "allocation_failed"


def test_missing_volume_falls_back_to_strategy_default():
    rules = PlanRules(buy_pressure_volume=0.4)
    assert normalize_volume(Strategy.DBPM, None, rules) == pytest.approx(0.4)
    assert normalize_volume(Strategy.PLD, float("nan"), rules) == pytest.approx(0.6)
    assert normalize_volume(Strategy.CMWA, -1, rules) == pytest.approx(0.8)
    assert normalize_volume(Strategy.DBPM, 0.25, rules) == 0.25


def test_profit_and_loss_rules_only_apply_when_metrics_present():
    assert check_rules(1, 0.1, PlanRules()) == []
    rules = PlanRules(expected_profit=0.1, expected_loss=20, global_stop_loss=15)
    assert check_rules(1, 0.1, rules) == ["arbitrage_profit_floor", "global_stop_loss"]


def test_random_split_is_non_negative_and_complete():
    parts = split_volume_random(1.0, 6, random.Random(1))
    assert len(parts) == 6
    assert all(p >= 0 for p in parts)
    assert sum(parts) == pytest.approx(1.0)


def test_liquidation_plan_only_sells(planner):
    wallets = make_wallets(3)
    plan = planner.build_liquidation_plan(wallets, [0.1, 0.2, 0.3], MINT, USER)

    assert plan.success
    assert {t.intent for t in plan.transactions} == {TradeIntent.SELL}
    assert {a.role for a in plan.allocation} == {WalletRole.EXIT}
    assert plan.summary.total_volume == pytest.approx(0.6)


def test_liquidation_plan_needs_one_volume_per_wallet(planner):
    plan = planner.build_liquidation_plan(make_wallets(2), [0.1], MINT, USER)
    assert plan.error == "allocation_failed"


def test_execution_plan_totals_and_ttl(planner):
    plan = planner.generate_execution_plan(
        Strategy.PLD, make_wallets(2), 0.4, PlanRules(), MINT, USER,
    )
    compact = to_execution_plan(plan, now=1_000)

    assert compact.total_buy_volume == pytest.approx(0.2)
    assert compact.total_sell_volume == pytest.approx(0.2)
    assert compact.expires_at - compact.created_at == PLAN_TTL_SECONDS


def test_execution_plan_refuses_failed_plan(planner):
    failed = planner.generate_execution_plan(Strategy.DBPM, [], 0.1, PlanRules(), MINT, USER)
    with pytest.raises(ValidationError, match="plan fallido"):
        to_execution_plan(failed)


def test_wallet_record_ids_stay_with_their_amounts(planner):
    wallets = [WalletRecord(id=f"id-{i}", user_id=USER, public_key=f"K{i}") for i in range(3)]
    plan = planner.generate_execution_plan(Strategy.DBPM, wallets, 0.3, PlanRules(), MINT, USER)
    for a, t in zip(plan.allocation, plan.transactions):
        assert a.wallet.id == t.wallet.id
        assert a.amount == t.volume
