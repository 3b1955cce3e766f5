# controllers/trade_executor.py
from __future__ import annotations

import math
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional, Sequence

from volume_bot.enums.strategy import Platform, TradeIntent
from volume_bot.exceptions import AuthorizationError, ValidationError, VolumeBotError
from volume_bot.models.execution import ExecutionContext, ExecutionRecord, ExecutionSummary
from volume_bot.models.plan import AllocationPlan, TransactionEntry
from volume_bot.services.ports import BalanceReader, FeeCollector, PriceSource, Signer, VenueAdapter, WalletCustody
from volume_bot.services.venue_service import venue_for
from volume_bot.utils.logger import logger_manager, log_function
from volume_bot.utils.timeouts import call_with_timeout

logger = logger_manager.setup_logger(__name__)

DEFAULT_SLIPPAGE_BPS = int(os.getenv("DEFAULT_SLIPPAGE_BPS", "100"))
DUST_THRESHOLD_SOL   = float(os.getenv("DUST_THRESHOLD_SOL", "0.0001"))
CALL_TIMEOUT_SECS    = float(os.getenv("EXECUTOR_CALL_TIMEOUT_SECS", "45"))
MAX_WORKERS          = int(os.getenv("EXECUTOR_MAX_WORKERS", "4"))

# motivos de skip
WALLET_NOT_AUTHORIZED = "wallet_not_authorized"
WALLET_PUBKEY_MISMATCH = "wallet_pubkey_mismatch"
INVALID_VOLUME = "invalid_volume"
INSUFFICIENT_SOL = "insufficient_sol_balance"
WALLET_HAS_NO_TOKENS = "wallet_has_no_tokens"
PRICE_UNAVAILABLE = "price_unavailable"
INSUFFICIENT_TOKENS = "insufficient_tokens"
UNABLE_TO_COMPUTE_RAW = "unable_to_compute_raw_amount"
UNSUPPORTED_INTENT = "unsupported_intent"


class _Batch:
    """Estado de un único lote: firmantes y precio. Se descarta al terminar."""

    def __init__(self, ctx: ExecutionContext, current_price: Optional[float]):
        self.ctx = ctx
        self.signers: Dict[str, Optional[Signer]] = {}
        self.price = current_price if current_price and math.isfinite(current_price) and current_price > 0 else None
        self.price_checked = self.price is not None
        self.lock = threading.Lock()


class TradeExecutor:
    """
    Ejecuta un plan de asignación wallet a wallet.

    Un fallo en una wallet nunca aborta el lote: cada transacción produce un
    ExecutionRecord con éxito, skip (con motivo) o fallo (con error).
    """

    def __init__(
        self,
        custody: WalletCustody,
        venues: Dict[Platform, VenueAdapter],
        fee_collector: FeeCollector,
        balances: BalanceReader,
        price_source: PriceSource | None = None,
        call_timeout: float = CALL_TIMEOUT_SECS,
        dust_threshold: float = DUST_THRESHOLD_SOL,
        max_workers: int = MAX_WORKERS,
    ):
        self.custody = custody
        self.venues = venues
        self.fee_collector = fee_collector
        self.balances = balances
        self.price_source = price_source
        self.call_timeout = call_timeout
        self.dust_threshold = dust_threshold
        self.max_workers = max(1, max_workers)

    # ---------- API pública ----------
    @log_function
    def execute_transactions(
        self,
        plan: AllocationPlan | Sequence[TransactionEntry],
        ctx: ExecutionContext,
        current_price: float | None = None,
        min_sol_balance: float = 0.0,
    ) -> List[ExecutionRecord]:
        if not ctx.session_id:
            raise ValidationError("session_id es obligatorio para ejecutar")
        if not ctx.token_mint:
            raise ValidationError("token_mint es obligatorio para ejecutar")
        transactions = list(plan.transactions if isinstance(plan, AllocationPlan) else plan)
        if not transactions:
            return []

        venue_for(self.venues, ctx.platform)  # falla pronto si no hay venue
        batch = _Batch(ctx, current_price)
        records: List[Optional[ExecutionRecord]] = [None] * len(transactions)

        sequential = [i for i, tx in enumerate(transactions) if not tx.concurrency]
        concurrent = [i for i, tx in enumerate(transactions) if tx.concurrency]

        for i in sequential:
            records[i] = self._execute_one(transactions[i], batch, min_sol_balance)

        if concurrent:
            workers = min(self.max_workers, len(concurrent))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="exec") as pool:
                futures = {i: pool.submit(self._execute_one, transactions[i], batch, min_sol_balance)
                           for i in concurrent}
                for i, fut in futures.items():
                    records[i] = fut.result()

        batch.signers.clear()
        done = [r for r in records if r is not None]
        s = summarize_executions(done)
        logger.info(
            f"Lote {ctx.session_id[:8]} {ctx.token_mint[:8]}…: {s.success} ok, "
            f"{s.skipped} skip, {s.failed} fallidas de {s.total}"
        )
        return done

    # ---------- internos ----------
    def _execute_one(self, tx: TransactionEntry, batch: _Batch, min_sol_balance: float) -> ExecutionRecord:
        ctx = batch.ctx
        record = ExecutionRecord(
            wallet_id=tx.wallet.id,
            public_key=tx.wallet.public_key,
            role=tx.role,
            intent=tx.intent,
            volume=tx.volume,
            concurrency=tx.concurrency,
        )
        try:
            signer = self._resolve_signer(tx, batch)
            if not math.isfinite(tx.volume) or tx.volume <= 0:
                return self._skip(record, INVALID_VOLUME)

            venue = venue_for(self.venues, ctx.platform)
            slippage = ctx.slippage_bps or DEFAULT_SLIPPAGE_BPS

            if tx.intent == TradeIntent.BUY:
                notional = self._buy(record, tx, signer, venue, slippage, batch, min_sol_balance)
            elif tx.intent == TradeIntent.SELL:
                notional = self._sell(record, tx, signer, venue, slippage, batch)
            else:
                return self._skip(record, UNSUPPORTED_INTENT)

            if notional is None:
                return record
            record.success = True
            record.notional = notional
            self._collect_fee(record, signer, notional, ctx.referrer)
        except AuthorizationError as e:
            self._skip(record, str(e))
        except VolumeBotError as e:
            record.success = False
            record.error = str(e)
            logger.warning(f"Wallet {tx.wallet.public_key[:8]}… {tx.intent}: {e}")
        except Exception as e:
            record.success = False
            record.error = str(e) or e.__class__.__name__
            logger.exception(f"Error inesperado ejecutando {tx.intent} en {tx.wallet.public_key[:8]}…: {e}")
        return record

    def _resolve_signer(self, tx: TransactionEntry, batch: _Batch) -> Signer:
        ctx = batch.ctx
        with batch.lock:
            cached = tx.wallet.id in batch.signers
            signer = batch.signers.get(tx.wallet.id)
        if not cached:
            signer = call_with_timeout(self.custody.resolve, self.call_timeout,
                                       tx.wallet.id, ctx.user_id, ctx.session_id)
            with batch.lock:
                batch.signers[tx.wallet.id] = signer
        if signer is None:
            raise AuthorizationError(WALLET_NOT_AUTHORIZED)
        if signer.public_key != tx.wallet.public_key:
            raise AuthorizationError(WALLET_PUBKEY_MISMATCH)
        return signer

    def _buy(self, record, tx, signer, venue, slippage, batch: _Batch, min_sol_balance: float) -> Optional[float]:
        ctx = batch.ctx
        if min_sol_balance > 0:
            sol = call_with_timeout(self.balances.sol_balance, self.call_timeout, signer.public_key)
            if sol - tx.volume < min_sol_balance:
                self._skip(record, INSUFFICIENT_SOL)
                return None
        record.signature = call_with_timeout(venue.buy, self.call_timeout,
                                             signer, ctx.token_mint, tx.volume, slippage)
        try:
            # solo referencia para el precio de entrada; la compra ya está hecha
            record.price = self._batch_price(batch)
        except Exception as e:
            logger.warning(f"Precio de referencia no disponible tras compra en {record.public_key[:8]}…: {e}")
        return tx.volume

    def _sell(self, record, tx, signer, venue, slippage, batch: _Batch) -> Optional[float]:
        ctx = batch.ctx
        balance = call_with_timeout(self.balances.token_balance, self.call_timeout,
                                    signer.public_key, ctx.token_mint)
        decimals = ctx.token_decimals if ctx.token_decimals is not None else balance.decimals
        available = balance.amount
        if available <= 0:
            self._skip(record, WALLET_HAS_NO_TOKENS)
            return None

        price = self._batch_price(batch)
        if price is None:
            self._skip(record, PRICE_UNAVAILABLE)
            return None

        sell_tokens, dust = compute_sell_amount(available, tx.volume, price, self.dust_threshold)
        min_unit = 10 ** -decimals
        if not math.isfinite(sell_tokens):
            self._skip(record, UNABLE_TO_COMPUTE_RAW)
            return None
        if sell_tokens < min_unit:
            self._skip(record, INSUFFICIENT_TOKENS)
            return None
        if int(sell_tokens * 10 ** decimals) <= 0:
            self._skip(record, UNABLE_TO_COMPUTE_RAW)
            return None

        record.dust_prevention = dust
        record.sold_all = sell_tokens >= available
        if dust:
            logger.info(f"Dust: {record.public_key[:8]}… vende todo ({available}) en lugar de dejar resto")
        record.signature = call_with_timeout(venue.sell, self.call_timeout,
                                             signer, ctx.token_mint, sell_tokens, slippage, decimals)
        record.sold_tokens = sell_tokens
        record.price = price
        return sell_tokens * price

    def _batch_price(self, batch: _Batch) -> Optional[float]:
        with batch.lock:
            if batch.price_checked:
                return batch.price
        price = None
        if self.price_source is not None:
            try:
                price = call_with_timeout(self.price_source.get_price_native, self.call_timeout,
                                          batch.ctx.token_mint)
            except VolumeBotError as e:
                logger.warning(f"Precio no disponible para {batch.ctx.token_mint[:8]}…: {e}")
        with batch.lock:
            batch.price = price if price and math.isfinite(price) and price > 0 else None
            batch.price_checked = True
            return batch.price

    def _collect_fee(self, record: ExecutionRecord, signer: Signer, notional: float, referrer: Optional[str]) -> None:
        try:
            result = call_with_timeout(self.fee_collector.collect, self.call_timeout, signer, notional, referrer)
            record.platform_fee = result.fee_amount
            record.platform_fee_collected = result.success
            if not result.success:
                logger.warning(f"Comisión no cobrada en {record.public_key[:8]}…: {result.error}")
        except Exception as e:
            # la operación ya está confirmada, no se revierte
            record.platform_fee_collected = False
            logger.warning(f"Cobro de comisión lanzó error en {record.public_key[:8]}…: {e}")

    @staticmethod
    def _skip(record: ExecutionRecord, reason: str) -> ExecutionRecord:
        record.skipped = True
        record.success = False
        record.reason = reason
        return record


def compute_sell_amount(available: float, volume_sol: float, price: float, dust_threshold: float) -> tuple[float, bool]:
    """
    Tokens a vender para ``volume_sol`` al precio dado, limitado al saldo.
    Si el resto valdría menos que ``dust_threshold`` se vende todo.
    """
    desired = volume_sol / price
    sell = min(available, desired)
    remaining = available - sell
    if remaining > 0 and remaining * price < dust_threshold:
        return available, True
    return sell, False


def summarize_executions(records: Iterable[ExecutionRecord]) -> ExecutionSummary:
    s = ExecutionSummary()
    for r in records:
        s.total += 1
        is_sell = str(getattr(r.intent, "value", r.intent)) == TradeIntent.SELL.value
        if is_sell:
            s.total_sell_intents += 1
        if r.skipped:
            s.skipped += 1
            if r.reason == WALLET_HAS_NO_TOKENS:
                s.wallets_with_no_tokens += 1
        elif r.success:
            s.success += 1
            s.executed_volume += r.notional if r.notional is not None else r.volume
            if r.platform_fee_collected:
                s.fees_collected += r.platform_fee
            if is_sell:
                s.sells_completed += 1
            else:
                s.buys_completed += 1
        else:
            s.failed += 1
    s.all_wallets_empty = s.total_sell_intents > 0 and s.total_sell_intents == s.wallets_with_no_tokens
    return s
