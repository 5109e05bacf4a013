"""Main arbitrage engine application."""

import asyncio
import logging
import signal
import sys
from typing import Dict, Optional

from .config import config_from_env, default_config, merge_config
from .advisory.advisor import AdvisoryService, LLMAdvisor
from .capital.manager import CapitalManager
from .data.connector import CCXTPriceFeed
from .execution.engine import CCXTExchangeConnector, ExecutionEngine
from .lifecycle.lanes import LaneManager, TradingLane
from .scanner.market_scanner import OpportunityScanner
from .sizing.position_sizer import PositionSizer
from .storage.journal import TradeJournal

logger = logging.getLogger(__name__)


def configure_logging(level: int = logging.INFO, log_file: str = 'arb_engine.log'):
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )


class ArbitrageBot:
    """Wires the scanner, capital manager and one lane per exchange together."""

    def __init__(self, config: Optional[Dict] = None, install_signal_handlers: bool = True):
        self.config = merge_config(default_config(), config or {})
        self._running = False
        self._stopped = asyncio.Event()

        self._init_components()

        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

        logger.info("Arbitrage engine initialized")

    def _exchange_config(self, name: str) -> Dict:
        exchange_config = dict(self.config['exchange'])
        exchange_config.update(self.config['credentials'].get(name, {}))
        return exchange_config

    def _init_components(self):
        """Initialize all engine components."""
        try:
            exchanges = self.config['exchanges']
            if not exchanges:
                raise ValueError("At least one exchange must be configured")
            trading = self.config['trading']

            self.connectors = {
                name: CCXTExchangeConnector(name, self._exchange_config(name))
                for name in exchanges
            }

            # Prices come from the first exchange; every exchange is sized separately
            scanner_cfg = dict(self.config['scanner'])
            self.price_feed = CCXTPriceFeed(
                exchanges[0],
                self._exchange_config(exchanges[0]),
                max_age_seconds=scanner_cfg.get('max_observation_age_seconds', 5.0),
            )

            journal_cfg = self.config['journal']
            self.journal = None
            if journal_cfg.get('enabled'):
                self.journal = TradeJournal(
                    journal_cfg.get('path'),
                    rejection_retention_days=journal_cfg.get('rejection_retention_days', 7),
                )

            self.capital = CapitalManager(self.connectors, config=self.config['capital'])
            self.sizer = PositionSizer(self.config['sizing'])

            scanner_cfg['exchanges'] = list(exchanges)
            scanner_cfg['min_net_profit'] = trading['min_net_profit']
            self.scanner = OpportunityScanner(
                self.price_feed,
                sizer=self.sizer,
                capital=self.capital,
                config=scanner_cfg,
                record_store=self.journal,
            )
            self.capital.opportunity_source = self.scanner

            advisor_cfg = self.config['advisor']
            primary = LLMAdvisor(advisor_cfg) if advisor_cfg.get('enabled') else None
            self.advisory = AdvisoryService(primary=primary, timeout=advisor_cfg.get('timeout', 10))

            self.lanes = LaneManager()
            for name in exchanges:
                self.lanes.add_lane(TradingLane(
                    lane_id=f"lane-{name}",
                    exchange=name,
                    scanner=self.scanner,
                    execution_engine=ExecutionEngine(self.connectors[name], self.config['execution']),
                    capital=self.capital,
                    advisory=self.advisory,
                    record_store=self.journal,
                    config=trading,
                ))

            logger.info(f"All components initialized for {len(exchanges)} exchange(s)")

        except Exception as e:
            logger.error(f"Error initializing components: {e}")
            raise

    async def start(self):
        """Start balance refresh, scanning and lanes."""
        try:
            logger.info("Starting arbitrage engine...")
            self._stopped.clear()

            await self.capital.start()
            summary = self.capital.get_capital_status()
            logger.info(f"Capital at startup: ${summary.total:.2f} across {len(summary.exchanges)} exchange(s)")
            if summary.total <= 0:
                logger.critical("No balance on any exchange, lanes will not be able to enter trades")

            await self.scanner.start()
            await self.lanes.start_all()
            self._running = True

        except Exception as e:
            logger.error(f"Error starting arbitrage engine: {e}")
            raise

    async def stop(self):
        """Stop lanes, scanner and capital monitor, then close connections."""
        if self._stopped.is_set():
            return
        try:
            logger.info("Stopping arbitrage engine...")
            self._running = False

            await self.lanes.stop_all()
            await self.scanner.stop()
            await self.capital.stop()
            await self.advisory.close()
            await self.price_feed.close()
            for connector in self.connectors.values():
                await connector.close()

            logger.info("Arbitrage engine stopped")

        except Exception as e:
            logger.error(f"Error stopping arbitrage engine: {e}")
        finally:
            self._stopped.set()

    async def wait_until_stopped(self):
        await self._stopped.wait()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down...")
        asyncio.create_task(self.stop())

    def get_status(self) -> Dict:
        """Get engine status."""
        return {
            'running': self._running,
            'lanes': self.lanes.get_status(),
            'capital': self.capital.get_status(),
            'scanner': self.scanner.get_stats(),
            'advisory_fallbacks': self.advisory.fallback_count,
        }


async def main():
    """Main entry point."""
    configure_logging()
    config = config_from_env()

    bot = ArbitrageBot(config if config else None)

    try:
        await bot.start()
        await bot.wait_until_stopped()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
    finally:
        await bot.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
