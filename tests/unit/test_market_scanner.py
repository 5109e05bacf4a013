"""Unit tests for OpportunityScanner."""

import asyncio
import pytest
from datetime import timedelta
from unittest.mock import MagicMock

from arb_engine.capital.manager import CapitalManager
from arb_engine.core.enums import RejectionCategory, ScannerStatus, Side
from arb_engine.core.errors import PriceFeedError, StaleDataError
from arb_engine.core.models import Position
from arb_engine.data.connector import PriceFeed
from arb_engine.scanner.market_scanner import OpportunityScanner
from arb_engine.sizing.position_sizer import PositionSizer


class MockPriceFeed(PriceFeed):
    """Returns canned observations; Exception values are raised."""

    def __init__(self, observations=None):
        self.observations = observations or {}
        self.calls = 0

    async def get_observation(self, symbol):
        self.calls += 1
        value = self.observations[symbol]
        if isinstance(value, Exception):
            raise value
        return value


def _make_scanner(feed, clock, **kwargs):
    config = {"symbols": list(feed.observations)}
    config.update(kwargs.pop("config", {}))
    return OpportunityScanner(feed, config=config, clock=clock, **kwargs)


class TestScanTick:

    @pytest.mark.asyncio
    async def test_emits_sized_opportunity(self, clock, make_observation):
        feed = MockPriceFeed({"BTC/USDT": make_observation()})
        scanner = _make_scanner(feed, clock)

        emitted = await scanner.scan_once()

        assert len(emitted) == 1
        opp = emitted[0]
        assert opp.symbol == "BTC/USDT"
        assert opp.exchange == "binance"
        assert opp.side == Side.LONG
        assert opp.entry_price == 50_001.0
        assert opp.position_size == 250.0
        assert opp.fees == 0.5
        assert opp.projected_net_profit == 0.95
        assert opp.take_profit_percent == pytest.approx(0.6)
        assert opp.projected_exit_price == pytest.approx(50_001.0 * 1.006)
        assert opp.stop_loss_price == pytest.approx(50_001.0 * 0.995)
        assert opp.score == pytest.approx(87.6)
        assert opp.confidence == pytest.approx(93.8)
        assert opp.expires_at == clock() + timedelta(seconds=30)
        assert scanner.get_all_opportunities() == [opp]

    @pytest.mark.asyncio
    async def test_short_on_negative_change(self, clock, make_observation):
        feed = MockPriceFeed({"BTC/USDT": make_observation(change_24h=-3.0)})
        scanner = _make_scanner(feed, clock)

        opp = (await scanner.scan_once())[0]

        assert opp.side == Side.SHORT
        assert opp.entry_price == 49_999.0
        assert opp.projected_exit_price < opp.entry_price < opp.stop_loss_price

    @pytest.mark.asyncio
    async def test_low_volume_rejected(self, clock, make_observation):
        feed = MockPriceFeed({"BTC/USDT": make_observation(volume_24h=500_000)})
        scanner = _make_scanner(feed, clock)

        assert await scanner.scan_once() == []
        assert scanner.rejections.count(RejectionCategory.VOLUME) == 1

    @pytest.mark.asyncio
    async def test_wide_spread_rejected(self, clock, make_observation):
        feed = MockPriceFeed({"BTC/USDT": make_observation(bid=49_900.0, ask=50_100.0)})
        scanner = _make_scanner(feed, clock)

        assert await scanner.scan_once() == []
        assert scanner.rejections.count(RejectionCategory.SPREAD) == 1

    @pytest.mark.asyncio
    async def test_low_score_categorised_by_weakest_sub_score(self, clock, make_observation):
        feed = MockPriceFeed({
            "BTC/USDT": make_observation(change_24h=0.1, volume_24h=2_000_000),
        })
        scanner = _make_scanner(feed, clock)

        assert await scanner.scan_once() == []
        record = scanner.rejections.recent(1)[0]
        assert record.category == RejectionCategory.VOLATILITY
        assert "Score 22.4" in record.reason

    @pytest.mark.asyncio
    async def test_fee_rejection(self, clock, make_observation):
        feed = MockPriceFeed({"BTC/USDT": make_observation()})
        sizer = PositionSizer({"fee_rates": {"binance": 0.004}})
        scanner = _make_scanner(feed, clock, sizer=sizer)

        assert await scanner.scan_once() == []
        record = scanner.rejections.recent(1)[0]
        assert record.category == RejectionCategory.FEES
        assert record.exchange == "binance"

    @pytest.mark.asyncio
    async def test_min_notional_rejected_as_capital(self, clock, make_observation):
        capital = CapitalManager(clock=clock)
        capital.update_balance("binance", 8.0)
        feed = MockPriceFeed({"BTC/USDT": make_observation()})
        scanner = _make_scanner(feed, clock, capital=capital)

        assert await scanner.scan_once() == []
        assert scanner.rejections.count(RejectionCategory.CAPITAL) == 1

    @pytest.mark.asyncio
    async def test_rejects_size_above_idle_capital(self, clock, make_observation):
        capital = CapitalManager(clock=clock)
        capital.update_balance("binance", 10_000.0)
        capital.track_position("binance", Position(
            id="p1", exchange="binance", symbol="ETH/USDT", entry_price=3000.0, size=9_900.0,
        ))
        feed = MockPriceFeed({"BTC/USDT": make_observation()})
        scanner = _make_scanner(feed, clock, capital=capital)

        assert await scanner.scan_once() == []
        record = scanner.rejections.recent(1)[0]
        assert record.category == RejectionCategory.CAPITAL
        assert "exceeds idle" in record.reason

    @pytest.mark.asyncio
    async def test_slow_setup_rejected_on_duration(self, clock, make_observation):
        feed = MockPriceFeed({"BTC/USDT": make_observation(change_24h=0.5)})
        scanner = _make_scanner(feed, clock)

        assert await scanner.scan_once() == []
        assert scanner.rejections.count(RejectionCategory.DURATION) == 1

    @pytest.mark.asyncio
    async def test_live_opportunity_not_reemitted(self, clock, make_observation):
        feed = MockPriceFeed({"BTC/USDT": make_observation()})
        scanner = _make_scanner(feed, clock)

        await scanner.scan_once()
        clock.advance(1)
        assert await scanner.scan_once() == []

        assert scanner.rejections.count(RejectionCategory.TIMING) == 1
        assert len(scanner.get_all_opportunities()) == 1

    @pytest.mark.asyncio
    async def test_one_opportunity_per_exchange(self, clock, make_observation):
        feed = MockPriceFeed({"BTC/USDT": make_observation()})
        scanner = _make_scanner(feed, clock, config={"exchanges": ["binance", "okx"]})

        emitted = await scanner.scan_once()

        assert sorted(o.exchange for o in emitted) == ["binance", "okx"]
        assert scanner.get_best_opportunity("okx").exchange == "okx"


class TestFeedFailures:

    @pytest.mark.asyncio
    async def test_old_observation_skipped_without_rejection(self, clock, make_observation):
        feed = MockPriceFeed({"BTC/USDT": make_observation(age_seconds=10)})
        scanner = _make_scanner(feed, clock)

        assert await scanner.scan_once() == []
        assert scanner.stale_skipped == 1
        assert scanner.rejections.total == 0

    @pytest.mark.asyncio
    async def test_stale_error_skipped(self, clock, make_observation):
        feed = MockPriceFeed({"BTC/USDT": StaleDataError("old")})
        scanner = _make_scanner(feed, clock)

        await scanner.scan_once()
        assert scanner.stale_skipped == 1
        assert scanner.fetch_failures == 0

    @pytest.mark.asyncio
    async def test_single_failure_does_not_abort_tick(self, clock, make_observation):
        feed = MockPriceFeed({
            "BTC/USDT": make_observation(),
            "ETH/USDT": PriceFeedError("timeout"),
        })
        scanner = _make_scanner(feed, clock)

        emitted = await scanner.scan_once()

        assert [o.symbol for o in emitted] == ["BTC/USDT"]
        assert scanner.fetch_failures == 1
        assert scanner.status != ScannerStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_degraded_after_repeated_total_failure(self, clock, make_observation):
        feed = MockPriceFeed({
            "BTC/USDT": PriceFeedError("down"),
            "ETH/USDT": PriceFeedError("down"),
        })
        scanner = _make_scanner(feed, clock)

        for _ in range(2):
            await scanner.scan_once()
        assert scanner.status != ScannerStatus.DEGRADED

        await scanner.scan_once()
        assert scanner.status == ScannerStatus.DEGRADED

        feed.observations["BTC/USDT"] = make_observation()
        await scanner.scan_once()
        assert scanner.status == ScannerStatus.RUNNING

    @pytest.mark.asyncio
    async def test_frozen_feed_degrades(self, clock, make_observation):
        feed = MockPriceFeed({
            "BTC/USDT": StaleDataError("old"),
            "ETH/USDT": make_observation("ETH/USDT", age_seconds=10),
        })
        scanner = _make_scanner(feed, clock)

        for _ in range(3):
            await scanner.scan_once()

        assert scanner.status == ScannerStatus.DEGRADED
        assert scanner.stale_skipped == 6
        assert scanner.fetch_failures == 0

    @pytest.mark.asyncio
    async def test_mixed_stale_and_failed_ticks_degrade(self, clock, make_observation):
        feed = MockPriceFeed({
            "BTC/USDT": StaleDataError("old"),
            "ETH/USDT": PriceFeedError("down"),
        })
        scanner = _make_scanner(feed, clock)

        for _ in range(3):
            await scanner.scan_once()

        assert scanner.status == ScannerStatus.DEGRADED


class TestWindow:

    @pytest.mark.asyncio
    async def test_expired_opportunities_pruned(self, clock, make_observation):
        feed = MockPriceFeed({"BTC/USDT": make_observation()})
        scanner = _make_scanner(feed, clock)
        await scanner.scan_once()

        clock.advance(31)
        assert scanner.get_all_opportunities() == []
        assert scanner.take_opportunity() is None

    @pytest.mark.asyncio
    async def test_window_ranked_and_bounded(self, clock, make_observation):
        feed = MockPriceFeed({
            "BTC/USDT": make_observation("BTC/USDT", change_24h=3.0),
            "ETH/USDT": make_observation("ETH/USDT", change_24h=4.0),
            "SOL/USDT": make_observation("SOL/USDT", change_24h=2.5),
        })
        scanner = _make_scanner(feed, clock, config={"window_size": 2})

        emitted = await scanner.scan_once()

        assert len(emitted) == 3
        assert [o.symbol for o in scanner.get_all_opportunities()] == ["ETH/USDT", "BTC/USDT"]

    @pytest.mark.asyncio
    async def test_take_opportunity_hands_out_once(self, clock, make_observation):
        feed = MockPriceFeed({"BTC/USDT": make_observation()})
        scanner = _make_scanner(feed, clock)
        await scanner.scan_once()

        first = scanner.take_opportunity("binance")
        assert first is not None
        assert scanner.take_opportunity("binance") is None
        assert scanner.get_best_opportunity("okx") is None

    @pytest.mark.asyncio
    async def test_subscription_and_unsubscribe(self, clock, make_observation):
        feed = MockPriceFeed({"BTC/USDT": make_observation()})
        scanner = _make_scanner(feed, clock)
        received = []
        unsubscribe = scanner.on_opportunity(received.append)

        await scanner.scan_once()
        assert len(received) == 1

        unsubscribe()
        clock.advance(31)
        await scanner.scan_once()
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_scan(self, clock, make_observation):
        feed = MockPriceFeed({"BTC/USDT": make_observation()})
        scanner = _make_scanner(feed, clock)
        scanner.on_opportunity(MagicMock(side_effect=RuntimeError("boom")))

        assert len(await scanner.scan_once()) == 1


class TestRecordStoreAndTuning:

    @pytest.mark.asyncio
    async def test_rejections_forwarded_to_store(self, clock, make_observation):
        store = MagicMock()
        feed = MockPriceFeed({"BTC/USDT": make_observation(volume_24h=10)})
        scanner = _make_scanner(feed, clock, record_store=store)

        await scanner.scan_once()

        store.record_rejections.assert_called_once()
        batch = store.record_rejections.call_args[0][0]
        assert [r.category for r in batch] == [RejectionCategory.VOLUME]

    @pytest.mark.asyncio
    async def test_rejections_written_in_batches(self, clock, make_observation):
        store = MagicMock()
        feed = MockPriceFeed({"BTC/USDT": make_observation(volume_24h=10)})
        scanner = _make_scanner(feed, clock, record_store=store)

        async def tick_after(seconds):
            clock.advance(seconds)
            feed.observations["BTC/USDT"] = make_observation(volume_24h=10)
            await scanner.scan_once()

        await scanner.scan_once()
        for _ in range(3):
            await tick_after(1)
        assert store.record_rejections.call_count == 1

        await tick_after(10)
        assert store.record_rejections.call_count == 2
        assert len(store.record_rejections.call_args[0][0]) == 4

        await tick_after(1)
        await scanner.stop()
        assert store.record_rejections.call_count == 3
        assert len(store.record_rejections.call_args[0][0]) == 1

    @pytest.mark.asyncio
    async def test_store_failure_is_logged_not_raised(self, clock, make_observation):
        store = MagicMock()
        store.record_rejections.side_effect = RuntimeError("disk full")
        feed = MockPriceFeed({"BTC/USDT": make_observation(volume_24h=10)})
        scanner = _make_scanner(feed, clock, record_store=store)

        await scanner.scan_once()
        assert scanner.rejections.total == 1

    def test_apply_adjustments_allow_list(self, clock):
        scanner = _make_scanner(MockPriceFeed(), clock)

        applied = scanner.apply_adjustments({
            "min_score": 55,
            "min_edge_percent": 0.8,
            "target_net_profit": 100,
        })

        assert applied == {"min_score": 55, "min_edge_percent": 0.8}
        assert scanner.config["min_score"] == 55
        assert scanner.sizer.config["min_edge_percent"] == 0.8
        assert scanner.sizer.config["target_net_profit"] == 1.0

    @pytest.mark.asyncio
    async def test_stats(self, clock, make_observation):
        feed = MockPriceFeed({
            "BTC/USDT": make_observation(),
            "ETH/USDT": make_observation("ETH/USDT", volume_24h=10),
        })
        scanner = _make_scanner(feed, clock)
        await scanner.scan_once()

        stats = scanner.get_stats()
        assert stats["tick_count"] == 1
        assert stats["opportunity_count"] == 1
        assert stats["rejection_count"] == 1
        assert stats["rejection_breakdown"][0]["category"] == "volume"
        assert stats["top_opportunities"][0]["symbol"] == "BTC/USDT"

    @pytest.mark.asyncio
    async def test_start_and_stop(self, clock, make_observation):
        feed = MockPriceFeed({"BTC/USDT": make_observation()})
        scanner = _make_scanner(feed, clock, config={"scan_interval_seconds": 0.01})

        await scanner.start()
        assert scanner.status == ScannerStatus.RUNNING
        await asyncio.sleep(0.05)
        await scanner.stop()

        assert scanner.tick_count >= 1
        assert scanner.status == ScannerStatus.STOPPED
        assert scanner.get_all_opportunities() == []
