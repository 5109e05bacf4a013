"""Configuration defaults and environment overrides."""

import copy
import os
from typing import Dict, List

from dotenv import load_dotenv


def default_config() -> Dict:
    """Default configuration."""
    return {
        'exchanges': ['binance'],
        'exchange': {
            'sandbox': True,    # Use testnet by default
        },
        'credentials': {},      # name -> {'apiKey': ..., 'secret': ...}
        'trading': {
            'min_net_profit': 0.50,
            'audit_interval': 20,
            'tick_interval_seconds': 1.0,
        },
        'sizing': {
            'target_net_profit': 1.00,
            'min_edge_percent': 0.6,
            'max_allocation_percent': 0.5,
            'fee_rates': {},
            'min_notionals': {},
        },
        'scanner': {
            'symbols': [
                'BTC/USDT', 'ETH/USDT', 'SOL/USDT', 'BNB/USDT', 'XRP/USDT',
                'DOGE/USDT', 'ADA/USDT', 'AVAX/USDT', 'DOT/USDT', 'LINK/USDT',
            ],
            'scan_interval_seconds': 1.0,
        },
        'capital': {
            'auto_deploy_enabled': False,
            'refresh_interval_seconds': 2.0,
        },
        'execution': {
            'poll_interval_seconds': 2.0,
            'exit_timeout_seconds': 30.0,
        },
        'advisor': {
            'enabled': False,   # Disabled by default
            'api_key': '',
            'timeout': 10,
        },
        'journal': {
            'enabled': True,
            'path': None,       # ~/.arb_engine/journal.db
            'rejection_retention_days': 7,
        },
    }


def merge_config(base: Dict, overrides: Dict) -> Dict:
    """Recursively merge *overrides* into a copy of *base*."""
    merged = copy.deepcopy(base)
    for key, val in (overrides or {}).items():
        if isinstance(val, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], val)
        else:
            merged[key] = copy.deepcopy(val)
    return merged


def _split(raw: str) -> List[str]:
    return [s.strip() for s in raw.split(',') if s.strip()]


def _flag(raw: str):
    raw = raw.strip().lower()
    if raw in ('1', 'true', 'yes'):
        return True
    if raw in ('0', 'false', 'no'):
        return False
    return None


def config_from_env() -> Dict:
    """Build config overrides from environment variables (and a .env file)."""
    load_dotenv()
    config: Dict = {}

    # Exchanges
    names = _split(os.getenv('EXCHANGES', ''))
    if names:
        config['exchanges'] = names
    sandbox = _flag(os.getenv('EXCHANGE_SANDBOX', ''))
    if sandbox is not None:
        config['exchange'] = {'sandbox': sandbox}
    for name in names or default_config()['exchanges']:
        api_key = os.getenv(f'{name.upper()}_API_KEY', '').strip()
        secret = os.getenv(f'{name.upper()}_SECRET', '').strip()
        if api_key or secret:
            config.setdefault('credentials', {})[name] = {
                'apiKey': api_key or None,
                'secret': secret or None,
            }

    # Trading
    min_net_profit = os.getenv('MIN_NET_PROFIT', '').strip()
    audit_interval = os.getenv('AUDIT_INTERVAL', '').strip()
    if min_net_profit or audit_interval:
        config['trading'] = {}
        if min_net_profit:
            config['trading']['min_net_profit'] = float(min_net_profit)
        if audit_interval:
            config['trading']['audit_interval'] = int(audit_interval)

    # Sizing
    min_edge = os.getenv('MIN_EDGE_PERCENT', '').strip()
    target = os.getenv('TARGET_NET_PROFIT', '').strip()
    allocation = os.getenv('MAX_ALLOCATION_PERCENT', '').strip()
    if min_edge or target or allocation:
        config['sizing'] = {}
        if min_edge:
            config['sizing']['min_edge_percent'] = float(min_edge)
        if target:
            config['sizing']['target_net_profit'] = float(target)
        if allocation:
            config['sizing']['max_allocation_percent'] = float(allocation)

    # Scanner
    symbols_raw = os.getenv('SCAN_SYMBOLS', '').strip()
    scan_interval = os.getenv('SCAN_INTERVAL_SECONDS', '').strip()
    if symbols_raw or scan_interval:
        config['scanner'] = {}
        if symbols_raw:
            config['scanner']['symbols'] = _split(symbols_raw)
        if scan_interval:
            config['scanner']['scan_interval_seconds'] = float(scan_interval)

    # Capital
    auto_deploy = _flag(os.getenv('AUTO_DEPLOY_ENABLED', ''))
    if auto_deploy is not None:
        config['capital'] = {'auto_deploy_enabled': auto_deploy}

    # Advisor
    if _flag(os.getenv('ADVISOR_ENABLED', '')):
        config['advisor'] = {'enabled': True, 'api_key': os.getenv('ADVISOR_API_KEY', '')}

    # Journal
    journal_path = os.getenv('JOURNAL_PATH', '').strip()
    if journal_path:
        config['journal'] = {'path': journal_path}

    return config
