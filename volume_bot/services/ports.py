"""
Interfaces of the external collaborators the engine talks to.

Concrete implementations live next to this module (HTTP clients) or in the
caller's code; tests use in-memory fakes.
"""

from __future__ import annotations

from typing import Optional, Protocol, Sequence, runtime_checkable

from volume_bot.models.execution import FeeResult, TokenBalance
from volume_bot.models.plan import WalletRecord


@runtime_checkable
class Signer(Protocol):
    """Signing capability for one wallet, valid for a single batch."""

    public_key: str

    def sign_and_send(self, tx_bytes: bytes) -> str:
        """Sign a serialized transaction, submit it and return its signature."""
        ...

    def transfer(self, destination: str, lamports: int) -> str:
        ...


class WalletCustody(Protocol):
    def resolve(self, wallet_id: str, user_id: str, session_id: str) -> Optional[Signer]:
        """Return the wallet's signer, or None on any ownership mismatch."""
        ...

    def list_wallets(self, user_id: str, limit: int = 50) -> Sequence[WalletRecord]:
        ...


class VenueAdapter(Protocol):
    def buy(self, signer: Signer, token_mint: str, amount_sol: float, slippage_bps: int) -> str:
        ...

    def sell(self, signer: Signer, token_mint: str, token_amount: float, slippage_bps: int,
             decimals: int = 6) -> str:
        ...


class FeeCollector(Protocol):
    def collect(self, signer: Signer, notional: float, referrer: Optional[str] = None) -> FeeResult:
        ...


class BalanceReader(Protocol):
    def token_balance(self, public_key: str, token_mint: str) -> TokenBalance:
        ...

    def sol_balance(self, public_key: str) -> float:
        ...


class PriceSource(Protocol):
    def get_price_native(self, token_mint: str) -> Optional[float]:
        ...
