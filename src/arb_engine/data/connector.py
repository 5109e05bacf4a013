"""Price feed interface and ccxt implementation."""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional
import asyncio
import logging
from datetime import datetime

import ccxt.async_support as ccxt

from ..core.errors import PriceFeedError, StaleDataError
from ..core.models import PriceObservation

logger = logging.getLogger(__name__)


def apply_sandbox_mode(exchange, exchange_name: str):
    """Apply sandbox/demo URLs for supported exchanges."""
    if hasattr(exchange, 'enable_demo_trading'):
        try:
            exchange.enable_demo_trading(True)
            logger.info(f"{exchange_name} demo trading enabled")
            return
        except Exception as e:
            logger.debug(f"{exchange_name} demo trading unavailable: {e}")
    exchange.set_sandbox_mode(True)
    logger.info(f"{exchange_name} sandbox mode enabled")


def build_ccxt_exchange(exchange_name: str, config: Optional[Dict] = None):
    """Instantiate a ccxt async exchange from a connector config dict."""
    config = config or {}
    # Binance uses 'future', Bybit/OKX use 'linear'
    type_map = {'binance': 'future', 'binanceusdm': 'future'}
    default_type = config.get('default_type') or type_map.get(exchange_name, 'linear')
    ccxt_keys = {
        k: v for k, v in config.items()
        if k not in ('sandbox', 'default_type') and v is not None
    }
    exchange_class = getattr(ccxt, exchange_name)
    return exchange_class({
        'enableRateLimit': True,
        'timeout': 30000,
        'options': {'defaultType': default_type},
        **ccxt_keys
    })


class PriceFeed(ABC):
    """Source of price observations for the scanner."""

    @abstractmethod
    async def get_observation(self, symbol: str) -> PriceObservation:
        """Latest observation for *symbol*.

        Raises:
            StaleDataError: the newest data is older than the freshness window.
            PriceFeedError: the data could not be fetched.
        """
        pass

    async def get_observations(self, symbols: List[str]) -> Dict[str, PriceObservation]:
        """Fetch several symbols concurrently, skipping the ones that fail."""
        results = await asyncio.gather(
            *(self.get_observation(s) for s in symbols), return_exceptions=True
        )
        observations = {}
        for symbol, result in zip(symbols, results):
            if isinstance(result, Exception):
                logger.debug(f"No observation for {symbol}: {result}")
                continue
            observations[symbol] = result
        return observations

    async def close(self):
        """Close connection."""
        pass


class CCXTPriceFeed(PriceFeed):
    """Ticker-based price feed on a ccxt exchange."""

    def __init__(
        self,
        exchange_name: str,
        config: Optional[Dict] = None,
        max_age_seconds: float = 5.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.exchange_name = exchange_name
        self.config = config or {}
        self.max_age_seconds = max_age_seconds
        self._clock = clock

        self.exchange = build_ccxt_exchange(exchange_name, self.config)
        if self.config.get('sandbox', False):
            apply_sandbox_mode(self.exchange, exchange_name)

        logger.info(f"Initialized CCXT price feed for {exchange_name}")

    async def get_observation(self, symbol: str) -> PriceObservation:
        try:
            ticker = await self.exchange.fetch_ticker(symbol)
        except ccxt.NetworkError as e:
            raise PriceFeedError(f"Network error fetching {symbol}: {e}") from e
        except ccxt.ExchangeError as e:
            raise PriceFeedError(f"Exchange error fetching {symbol}: {e}") from e

        observation = self._to_observation(symbol, ticker)
        age = observation.age_seconds(self._clock())
        if age > self.max_age_seconds:
            raise StaleDataError(f"{symbol} ticker is {age:.1f}s old")
        return observation

    def _to_observation(self, symbol: str, ticker: Dict) -> PriceObservation:
        last = ticker.get('last') or ticker.get('close')
        if not last:
            raise PriceFeedError(f"Ticker for {symbol} has no last price")

        timestamp = ticker.get('timestamp')
        return PriceObservation(
            symbol=symbol,
            price=float(last),
            change_24h=float(ticker.get('percentage') or 0.0),
            volume_24h=float(ticker.get('quoteVolume') or 0.0),
            bid=ticker.get('bid'),
            ask=ticker.get('ask'),
            last_updated=datetime.fromtimestamp(timestamp / 1000) if timestamp else self._clock(),
        )

    async def close(self):
        await self.exchange.close()
        logger.info(f"Closed price feed for {self.exchange_name}")
