import pytest
import requests

from volume_bot.enums.strategy import Platform
from volume_bot.services.market_service import MarketService
from volume_bot.services.platform_detector import PlatformDetector
from volume_bot.services.status_classifier import normalize_metrics
from tests.conftest import MINT

PLAIN_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")

    def json(self):
        return self.payload


class FakeHttp:
    def __init__(self, payload=None, status=200, error=None):
        self.payload = payload
        self.status = status
        self.error = error
        self.urls = []

    def get(self, url, timeout=None, **kwargs):
        self.urls.append(url)
        if self.error:
            raise self.error
        return FakeResponse(self.payload, self.status)


def pair(**kw):
    base = {
        "chainId": "solana", "dexId": "raydium", "priceNative": "0.0004", "priceUsd": "0.06",
        "priceChange": {"m5": -5.5, "h1": 2}, "volume": {"m5": 12.5},
        "liquidity": {"usd": 9000, "quote": 45}, "fdv": 60000,
    }
    base.update(kw)
    return base


def test_launchpad_tokens_are_detected_by_dex_url_or_suffix():
    d = PlatformDetector()
    assert d.is_bonding_curve_token(MINT)
    assert d.is_bonding_curve_token(PLAIN_MINT, {"dexId": "pumpfun"})
    assert d.is_bonding_curve_token(PLAIN_MINT, {"url": "https://pump.fun/coin/x"})
    assert not d.is_bonding_curve_token(PLAIN_MINT, {"dexId": "raydium"})


def test_platform_resolution():
    d = PlatformDetector()
    assert d.resolve_platform(MINT) == Platform.PUMPFUN
    assert d.resolve_platform(MINT, {"dexId": "pumpfun"}) == Platform.PUMPFUN
    assert d.resolve_platform(MINT, {"dexId": "raydium"}) == Platform.JUPITER
    assert d.resolve_platform(MINT, {"migrationDetected": True}) == Platform.JUPITER
    assert d.resolve_platform(MINT, {"bondingCurveProgress": 100}) == Platform.JUPITER
    assert d.resolve_platform(PLAIN_MINT) == Platform.JUPITER


def test_best_pair_price_and_metrics():
    http = FakeHttp({"pairs": [pair(liquidity={"usd": 10, "quote": 1}, priceNative="1"), pair()]})
    market = MarketService(session=http)

    assert market.get_price_native(MINT) == pytest.approx(0.0004)
    metrics = market.get_metrics(MINT)
    assert metrics["migrationDetected"] is True
    assert metrics["liquidity"]["sol"] == 45
    assert metrics["supply"]["circulating"] == pytest.approx(1_000_000)
    assert http.urls[0].endswith(MINT)

    snap = normalize_metrics(metrics)
    assert snap.price.change5m == -5.5
    assert snap.volume.vol5m == 12.5
    assert snap.migration_detected


def test_missing_pairs_or_network_errors_give_no_price():
    assert MarketService(session=FakeHttp({"pairs": None})).get_price_native(MINT) is None
    assert MarketService(session=FakeHttp({"pairs": []})).get_metrics(MINT) == {}
    down = MarketService(session=FakeHttp(error=requests.ConnectionError("down")))
    assert down.get_price_native(MINT) is None
    with pytest.raises(requests.RequestException):
        down.get_metrics(MINT)
