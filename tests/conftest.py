"""Pytest configuration and fixtures."""

import pytest
from datetime import datetime, timedelta

from arb_engine.core.enums import ExitReason, Side
from arb_engine.core.models import Opportunity, PriceObservation, TradeCycleResult


T0 = datetime(2024, 1, 1, 12, 0, 0)


class FakeClock:
    """Manually advanced clock for deterministic expiry and cooldown tests."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    """asyncio.sleep replacement that moves the fake clock instead of waiting."""
    async def _sleep(seconds):
        clock.advance(seconds)
    return _sleep


@pytest.fixture
def make_opportunity(clock):
    """Factory for a sized BTC long: $250 notional, 0.6% target, 0.5% stop."""
    def _make(**overrides):
        now = clock()
        fields = dict(
            symbol="BTC/USDT",
            exchange="binance",
            side=Side.LONG,
            entry_price=50_000.0,
            projected_exit_price=50_300.0,
            stop_loss_price=49_750.0,
            take_profit_percent=0.6,
            projected_net_profit=0.95,
            fees=0.50,
            slippage_budget=0.05,
            position_size=250.0,
            score=80.0,
            confidence=80.0,
            created_at=now,
            expires_at=now + timedelta(seconds=30),
        )
        fields.update(overrides)
        return Opportunity(**fields)
    return _make


@pytest.fixture
def make_result(make_opportunity, clock):
    """Factory for completed cycle results."""
    counter = {"n": 0}

    def _make(success=True, net=0.75, exit_reason=ExitReason.TAKE_PROFIT,
              side=Side.LONG, completed_at=None, lane_id="lane-test"):
        counter["n"] += 1
        return TradeCycleResult(
            lane_id=lane_id,
            trade_number=counter["n"],
            opportunity=make_opportunity(side=side),
            success=success,
            actual_net_profit=net,
            exit_price=50_300.0,
            exit_reason=exit_reason,
            duration=timedelta(seconds=20),
            completed_at=completed_at or clock(),
        )
    return _make


@pytest.fixture
def make_observation(clock):
    """Factory for a fresh, liquid, tight-spread observation."""
    def _make(symbol="BTC/USDT", price=50_000.0, change_24h=3.0, volume_24h=60_000_000,
              bid=49_999.0, ask=50_001.0, age_seconds=0.0):
        return PriceObservation(
            symbol=symbol,
            price=price,
            change_24h=change_24h,
            volume_24h=volume_24h,
            bid=bid,
            ask=ask,
            last_updated=clock() - timedelta(seconds=age_seconds),
        )
    return _make
