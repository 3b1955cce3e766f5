"""
Wallet allocation planner.

Given a strategy, a wallet set and a volume target, builds the per-wallet
trade intents for one cycle. Safety rules are checked before allocating: a
violated rule rejects the whole plan (no transactions), it never clips the
volume to fit.

Randomness (wallet order and slice sizes for DBPM) comes from an injectable
``random.Random`` so tests can seed it.
"""

from __future__ import annotations

import math
import random
import time
import uuid
from collections import Counter
from typing import List, Optional, Sequence

from volume_bot.enums.strategy import Strategy, TradeIntent, WalletRole
from volume_bot.exceptions import RuleViolation, ValidationError
from volume_bot.models.plan import (
    AllocationEntry,
    AllocationPlan,
    ExecutionPlan,
    PlanRules,
    PlanSummary,
    TransactionEntry,
    WalletRecord,
)
from volume_bot.utils.logger import logger_manager, log_function

logger = logger_manager.setup_logger(__name__)

PLAN_TTL_SECONDS = 60

# multiplicador sobre buy_pressure_volume cuando no se pide volumen explícito
_DEFAULT_VOLUME_SCALE = {
    Strategy.DBPM: 1.0,
    Strategy.PLD: 1.5,
    Strategy.CMWA: 2.0,
}


def normalize_volume(strategy: Strategy, total_volume: Optional[float], rules: PlanRules) -> float:
    if total_volume is not None and math.isfinite(total_volume) and total_volume > 0:
        return float(total_volume)
    return rules.buy_pressure_volume * _DEFAULT_VOLUME_SCALE[strategy]


def check_rules(wallet_count: int, volume: float, rules: PlanRules) -> List[str]:
    violations: List[str] = []
    if wallet_count > rules.initial_wallet_count:
        violations.append("initial_wallet_count")
    if volume > rules.buy_pressure_volume:
        violations.append("buy_pressure_volume")
    if rules.expected_profit is not None and rules.expected_profit < rules.arbitrage_profit_floor:
        violations.append("arbitrage_profit_floor")
    if rules.expected_loss is not None and rules.expected_loss > rules.global_stop_loss:
        violations.append("global_stop_loss")
    return violations


def split_volume_random(total: float, parts: int, rng: random.Random) -> List[float]:
    """Cortes uniformes ordenados; cada trozo es la diferencia entre cortes consecutivos."""
    if parts <= 1:
        return [total]
    cuts = sorted(rng.random() for _ in range(parts - 1))
    slices: List[float] = []
    prev = 0.0
    for cut in cuts:
        slices.append(total * (cut - prev))
        prev = cut
    slices.append(total * (1 - prev))
    return slices


def split_volume_even(total: float, parts: int) -> List[float]:
    return [total / parts] * parts


def derive_intent(role: WalletRole, index: int) -> TradeIntent:
    if role == WalletRole.EXIT or "sell" in role.value:
        return TradeIntent.SELL
    if role == WalletRole.LIQUIDITY:
        # alterna para mantener el volumen neto equilibrado
        return TradeIntent.BUY if index % 2 == 0 else TradeIntent.SELL
    return TradeIntent.BUY


class AllocationPlanner:
    def __init__(self, rng: random.Random | None = None) -> None:
        self.rng = rng or random.Random()

    @log_function
    def generate_execution_plan(
        self,
        strategy: Strategy | str,
        wallets: Sequence[WalletRecord],
        total_volume: Optional[float],
        rules: PlanRules | None = None,
        token_mint: str = "",
        user_id: str = "",
    ) -> AllocationPlan:
        rules = rules or PlanRules()
        try:
            strategy = self._validate(strategy, wallets, token_mint, user_id)
            volume = normalize_volume(strategy, total_volume, rules)
            violations = check_rules(len(wallets), volume, rules)
            if violations:
                raise RuleViolation(violations)
            allocation = self._allocate(strategy, list(wallets), volume)
        except RuleViolation as e:
            logger.warning(f"Plan rechazado para {token_mint}: {e}")
            return AllocationPlan(
                success=False,
                strategy=strategy if isinstance(strategy, Strategy) else None,
                error="rule_violation",
                message=str(e),
                violations=e.violations,
            )
        except ValidationError as e:
            logger.warning(f"Plan inválido para {token_mint or '?'}: {e}")
            return AllocationPlan(success=False, error="allocation_failed", message=str(e))

        transactions = [
            TransactionEntry(
                wallet=a.wallet,
                role=a.role,
                intent=derive_intent(a.role, idx),
                volume=a.amount,
                concurrency=a.concurrency,
            )
            for idx, a in enumerate(allocation)
        ]
        summary = PlanSummary(
            user_id=user_id,
            token_mint=token_mint,
            strategy=strategy,
            total_volume=volume,
            wallet_count=len(allocation),
            roles=dict(Counter(a.role.value for a in allocation)),
            rules=rules,
        )
        return AllocationPlan(
            success=True,
            strategy=strategy,
            allocation=allocation,
            transactions=transactions,
            summary=summary,
        )

    def _validate(self, strategy, wallets, token_mint: str, user_id: str) -> Strategy:
        if not wallets:
            raise ValidationError("No hay wallets para asignar")
        if not token_mint:
            raise ValidationError("token_mint es obligatorio")
        if not user_id:
            raise ValidationError("user_id es obligatorio")
        try:
            strategy = Strategy(strategy)
        except ValueError:
            raise ValidationError(f"Estrategia desconocida: {strategy!r}")
        ids = [w.id for w in wallets]
        if len(set(ids)) != len(ids):
            raise ValidationError("Wallets duplicadas en el conjunto")
        return strategy

    def _allocate(self, strategy: Strategy, wallets: List[WalletRecord], volume: float) -> List[AllocationEntry]:
        n = len(wallets)
        if strategy == Strategy.DBPM:
            self.rng.shuffle(wallets)
            amounts = split_volume_random(volume, n, self.rng)
            return [
                AllocationEntry(
                    wallet=w,
                    role=WalletRole.ENTRY if i % 2 == 0 else WalletRole.EXIT,
                    amount=amounts[i],
                    concurrency=False,
                )
                for i, w in enumerate(wallets)
            ]
        if strategy == Strategy.PLD:
            amounts = split_volume_even(volume, n)
            return [
                AllocationEntry(wallet=w, role=WalletRole.LIQUIDITY, amount=amounts[i], concurrency=True)
                for i, w in enumerate(wallets)
            ]
        if strategy == Strategy.CMWA:
            amounts = split_volume_even(volume, n)
            return [
                AllocationEntry(
                    wallet=w,
                    role=WalletRole.ARBITRAGE_BUY if i % 2 == 0 else WalletRole.ARBITRAGE_SELL,
                    amount=amounts[i],
                    concurrency=True,
                )
                for i, w in enumerate(wallets)
            ]
        raise ValidationError(f"Estrategia sin asignador: {strategy}")

    def build_liquidation_plan(
        self,
        wallets: Sequence[WalletRecord],
        volumes: float | Sequence[float],
        token_mint: str,
        user_id: str,
        strategy: Strategy = Strategy.DBPM,
    ) -> AllocationPlan:
        """Plan de salida: todas las wallets venden, sin intenciones de compra."""
        if not wallets:
            return AllocationPlan(success=False, error="allocation_failed", message="No hay wallets para liquidar")
        if isinstance(volumes, (int, float)):
            volumes = [float(volumes)] * len(wallets)
        if len(volumes) != len(wallets):
            return AllocationPlan(success=False, error="allocation_failed",
                                  message="Un volumen por wallet")
        allocation = [
            AllocationEntry(wallet=w, role=WalletRole.EXIT, amount=v, concurrency=True)
            for w, v in zip(wallets, volumes)
        ]
        transactions = [
            TransactionEntry(wallet=a.wallet, role=a.role, intent=TradeIntent.SELL,
                             volume=a.amount, concurrency=True)
            for a in allocation
        ]
        summary = PlanSummary(
            user_id=user_id,
            token_mint=token_mint,
            strategy=strategy,
            total_volume=sum(a.amount for a in allocation),
            wallet_count=len(wallets),
            roles={WalletRole.EXIT.value: len(wallets)},
            rules=PlanRules(initial_wallet_count=len(wallets)),
        )
        return AllocationPlan(success=True, strategy=strategy, allocation=allocation,
                              transactions=transactions, summary=summary)


def to_execution_plan(plan: AllocationPlan, now: float | None = None) -> ExecutionPlan:
    if not plan.success or plan.strategy is None:
        raise ValidationError(f"No se puede resumir un plan fallido: {plan.error}")
    created = int(now if now is not None else time.time())
    buys = sum(t.volume for t in plan.transactions if t.intent == TradeIntent.BUY)
    sells = sum(t.volume for t in plan.transactions if t.intent == TradeIntent.SELL)
    return ExecutionPlan(
        plan_id=uuid.uuid4().hex,
        strategy=plan.strategy,
        wallet_count=len(plan.transactions),
        total_buy_volume=buys,
        total_sell_volume=sells,
        created_at=created,
        expires_at=created + PLAN_TTL_SECONDS,
    )
