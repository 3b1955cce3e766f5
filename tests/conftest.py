import os
import threading
import time

# sin ficheros de log ni llamadas reales durante los tests
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("DRY_RUN", "true")

import pytest

from volume_bot.controllers.trade_executor import TradeExecutor
from volume_bot.enums.strategy import Platform
from volume_bot.exceptions import ExecutionError
from volume_bot.models.execution import FeeResult, TokenBalance
from volume_bot.models.plan import WalletRecord

MINT = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmpump"
USER = "user-1"


def make_wallets(n, user_id=USER):
    return [WalletRecord(id=f"w{i}", user_id=user_id, public_key=f"PK{i}") for i in range(n)]


class FakeSigner:
    def __init__(self, public_key):
        self.public_key = public_key
        self.transfers = []
        self.fail_transfer = False

    def sign_and_send(self, tx_bytes):
        return f"sig-{self.public_key}"

    def transfer(self, destination, lamports):
        if self.fail_transfer:
            raise ExecutionError("transfer rejected")
        self.transfers.append((destination, lamports))
        return f"fee-{self.public_key}-{len(self.transfers)}"


class FakeCustody:
    def __init__(self, wallets):
        self.wallets = list(wallets)
        self.signers = {w.id: FakeSigner(w.public_key) for w in self.wallets}
        self.denied = set()
        self.resolve_calls = 0

    def resolve(self, wallet_id, user_id, session_id):
        self.resolve_calls += 1
        w = next((w for w in self.wallets if w.id == wallet_id), None)
        if w is None or w.user_id != user_id or wallet_id in self.denied:
            return None
        return self.signers[wallet_id]

    def list_wallets(self, user_id, limit=50):
        return [w for w in self.wallets if w.user_id == user_id][:limit]


class FakeVenue:
    def __init__(self, delay=0.0, fail=False):
        self.delay = delay
        self.fail = fail
        self.buys = []
        self.sells = []
        self._lock = threading.Lock()

    def buy(self, signer, token_mint, amount_sol, slippage_bps):
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise ExecutionError("slippage exceeded")
        with self._lock:
            self.buys.append((signer.public_key, amount_sol))
        return f"buy-{signer.public_key}-{len(self.buys)}"

    def sell(self, signer, token_mint, token_amount, slippage_bps, decimals=6):
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise ExecutionError("slippage exceeded")
        with self._lock:
            self.sells.append((signer.public_key, token_amount))
        return f"sell-{signer.public_key}-{len(self.sells)}"


class FakeFeeCollector:
    def __init__(self, raises=False):
        self.raises = raises
        self.calls = []

    def collect(self, signer, notional, referrer=None):
        if self.raises:
            raise RuntimeError("fee service down")
        self.calls.append((signer.public_key, notional, referrer))
        return FeeResult(success=True, fee_amount=notional * 0.02)


class FakeBalances:
    def __init__(self, tokens=None, sol=10.0, decimals=6):
        self.tokens = dict(tokens or {})
        self.sol = sol
        self.decimals = decimals

    def token_balance(self, public_key, token_mint):
        return TokenBalance(amount=self.tokens.get(public_key, 0.0), decimals=self.decimals)

    def sol_balance(self, public_key):
        return self.sol


class FakePrice:
    def __init__(self, price=0.001):
        self.price = price

    def get_price_native(self, token_mint):
        return self.price


@pytest.fixture
def wallets():
    return make_wallets(3)


@pytest.fixture
def custody(wallets):
    return FakeCustody(wallets)


@pytest.fixture
def venue():
    return FakeVenue()


@pytest.fixture
def balances(wallets):
    return FakeBalances({w.public_key: 1000.0 for w in wallets})


@pytest.fixture
def fee_collector():
    return FakeFeeCollector()


@pytest.fixture
def executor(custody, venue, fee_collector, balances):
    return TradeExecutor(
        custody=custody,
        venues={Platform.PUMPFUN: venue, Platform.JUPITER: venue},
        fee_collector=fee_collector,
        balances=balances,
        price_source=FakePrice(),
        call_timeout=5,
    )
