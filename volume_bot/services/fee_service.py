from __future__ import annotations

import os
from typing import Optional

from volume_bot.exceptions import ExecutionError
from volume_bot.models.execution import FeeResult
from volume_bot.services.ports import Signer
from volume_bot.utils.logger import logger_manager, log_function

logger = logger_manager.setup_logger(__name__)

PLATFORM_FEE_PERCENT  = float(os.getenv("PLATFORM_FEE_PERCENT", "2"))
REFERRAL_SHARE_PERCENT = float(os.getenv("REFERRAL_SHARE_PERCENT", "50"))
FEE_WALLET            = os.getenv("DEVELOPER_FEE_WALLET", "")
MIN_FEE_LAMPORTS      = int(os.getenv("MIN_FEE_LAMPORTS", "5000"))

LAMPORTS_PER_SOL = 1_000_000_000


def platform_fee(notional: float, percent: float = PLATFORM_FEE_PERCENT) -> float:
    return max(0.0, notional) * percent / 100


def split_referral(fee: float, referrer: Optional[str], share_percent: float = REFERRAL_SHARE_PERCENT) -> float:
    return fee * share_percent / 100 if referrer else 0.0


class PlatformFeeCollector:
    """
    Cobra la comisión de plataforma después de cada operación confirmada:
    transferencia del firmante a la wallet de tesorería y, si hay referido,
    su parte a la wallet del referido.
    """

    def __init__(self, fee_wallet: str = FEE_WALLET, percent: float = PLATFORM_FEE_PERCENT,
                 referral_percent: float = REFERRAL_SHARE_PERCENT):
        self.fee_wallet = fee_wallet
        self.percent = percent
        self.referral_percent = referral_percent

    @log_function
    def collect(self, signer: Signer, notional: float, referrer: Optional[str] = None) -> FeeResult:
        fee = platform_fee(notional, self.percent)
        referral = split_referral(fee, referrer, self.referral_percent)
        if not self.fee_wallet:
            return FeeResult(success=False, fee_amount=fee, error="DEVELOPER_FEE_WALLET no configurada")
        lamports = int((fee - referral) * LAMPORTS_PER_SOL)
        if lamports < MIN_FEE_LAMPORTS:
            # por debajo del coste de red no merece la pena transferir
            return FeeResult(success=True, fee_amount=0.0)
        try:
            signature = signer.transfer(self.fee_wallet, lamports)
            if referral > 0 and referrer:
                signer.transfer(referrer, int(referral * LAMPORTS_PER_SOL))
        except ExecutionError as e:
            logger.warning(f"Cobro de comisión fallido ({signer.public_key[:8]}…): {e}")
            return FeeResult(success=False, fee_amount=fee, referral_share=referral, error=str(e))
        return FeeResult(success=True, fee_amount=fee, referral_share=referral, signature=signature)
