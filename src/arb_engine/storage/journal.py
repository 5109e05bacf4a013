"""Append-only record store for cycle results, transitions and rejections."""

import json
import sqlite3
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, List, Optional
from pathlib import Path
import logging

import pandas as pd

from ..core.models import StateTransition, TradeCycleResult

logger = logging.getLogger(__name__)


class RecordStore(ABC):
    """Write-only sink the engine reports to. Reads are for external reporting."""

    @abstractmethod
    def record_cycle_result(self, result: TradeCycleResult):
        pass

    @abstractmethod
    def record_transition(self, transition: StateTransition):
        pass

    @abstractmethod
    def record_rejection(self, rejection):
        pass

    def record_rejections(self, rejections):
        for rejection in rejections:
            self.record_rejection(rejection)

    def record_audit(self, report):
        """Optional; stores ignore audits unless they override this."""
        pass


class TradeJournal(RecordStore):
    """
    SQLite journal. Results, transitions and audits are INSERT-only.

    Rejections are telemetry: they are written in batches and rows older
    than ``rejection_retention_days`` are pruned on each batch.
    """

    def __init__(self, db_path: Optional[str] = None, rejection_retention_days: float = 7.0):
        if db_path is None:
            db_path = Path.home() / ".arb_engine" / "journal.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.rejection_retention = timedelta(days=rejection_retention_days)
        self._init_database()

        logger.info(f"Trade journal initialized at {self.db_path}")

    def _init_database(self):
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS cycle_results (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    lane_id TEXT NOT NULL,
                    trade_number INTEGER NOT NULL,
                    opportunity_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    exchange TEXT NOT NULL,
                    side TEXT NOT NULL,
                    entry_price REAL NOT NULL,
                    exit_price REAL NOT NULL,
                    position_size REAL NOT NULL,
                    projected_net_profit REAL,
                    actual_net_profit REAL NOT NULL,
                    fees REAL,
                    success INTEGER NOT NULL,
                    exit_reason TEXT NOT NULL,
                    duration_seconds REAL,
                    completed_at TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS state_transitions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    lane_id TEXT NOT NULL,
                    from_state TEXT NOT NULL,
                    to_state TEXT NOT NULL,
                    reason TEXT,
                    payload TEXT,
                    forced INTEGER DEFAULT 0,
                    timestamp TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS rejections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL,
                    exchange TEXT,
                    category TEXT NOT NULL,
                    reason TEXT,
                    score REAL,
                    price REAL,
                    timestamp TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS audit_reports (
                    report_id TEXT PRIMARY KEY,
                    lane_id TEXT NOT NULL,
                    report_number INTEGER,
                    generated_at TEXT NOT NULL,
                    summary TEXT,
                    all_passed INTEGER,
                    body TEXT
                )
            """)

            conn.commit()

    def record_cycle_result(self, result: TradeCycleResult):
        opp = result.opportunity
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO cycle_results (
                    lane_id, trade_number, opportunity_id, symbol, exchange, side,
                    entry_price, exit_price, position_size, projected_net_profit,
                    actual_net_profit, fees, success, exit_reason, duration_seconds,
                    completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                result.lane_id,
                result.trade_number,
                opp.id,
                opp.symbol,
                opp.exchange,
                opp.side.value,
                opp.entry_price,
                result.exit_price,
                opp.position_size,
                opp.projected_net_profit,
                result.actual_net_profit,
                opp.fees,
                int(result.success),
                result.exit_reason.value,
                result.duration.total_seconds(),
                result.completed_at.isoformat(),
            ))
        logger.debug(f"Recorded cycle result {result.lane_id}#{result.trade_number}")

    def record_transition(self, transition: StateTransition):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO state_transitions (
                    lane_id, from_state, to_state, reason, payload, forced, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                transition.lane_id,
                transition.from_state.value,
                transition.to_state.value,
                transition.reason,
                json.dumps(transition.payload, default=str) if transition.payload else None,
                int(transition.forced),
                transition.timestamp.isoformat(),
            ))

    def record_rejection(self, rejection):
        self.record_rejections([rejection])

    def record_rejections(self, rejections):
        """Insert a batch in one transaction and prune rows past retention."""
        if not rejections:
            return
        cutoff = max(r.timestamp for r in rejections) - self.rejection_retention
        with sqlite3.connect(self.db_path) as conn:
            conn.executemany("""
                INSERT INTO rejections (
                    symbol, exchange, category, reason, score, price, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """, [
                (
                    r.symbol,
                    r.exchange,
                    r.category.value,
                    r.reason,
                    r.score,
                    r.price,
                    r.timestamp.isoformat(),
                )
                for r in rejections
            ])
            pruned = conn.execute(
                "DELETE FROM rejections WHERE timestamp < ?", (cutoff.isoformat(),)
            ).rowcount
        if pruned:
            logger.debug(f"Pruned {pruned} rejections older than {cutoff.isoformat()}")

    def record_audit(self, report):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO audit_reports (
                    report_id, lane_id, report_number, generated_at, summary, all_passed, body
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                report.report_id,
                report.lane_id,
                report.report_number,
                report.generated_at.isoformat(),
                report.summary,
                int(report.all_passed),
                report.model_dump_json(),
            ))

    # ------------------------------------------------------------------
    # Read-back for reporting
    # ------------------------------------------------------------------

    def get_cycle_results(self, lane_id: Optional[str] = None) -> pd.DataFrame:
        """Cycle results as a DataFrame indexed by completion time."""
        query = "SELECT * FROM cycle_results"
        params: List[Any] = []
        if lane_id:
            query += " WHERE lane_id = ?"
            params.append(lane_id)
        query += " ORDER BY completed_at"

        try:
            with sqlite3.connect(self.db_path) as conn:
                df = pd.read_sql_query(query, conn, params=params)
        except Exception as e:
            logger.error(f"Error reading cycle results: {e}")
            return pd.DataFrame()

        if not df.empty:
            df['completed_at'] = pd.to_datetime(df['completed_at'])
            df['success'] = df['success'].astype(bool)
            df.set_index('completed_at', inplace=True)
        return df

    def get_transitions(self, lane_id: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Transitions, newest first."""
        query = "SELECT lane_id, from_state, to_state, reason, payload, forced, timestamp FROM state_transitions WHERE 1=1"
        params: List[Any] = []
        if lane_id:
            query += " AND lane_id = ?"
            params.append(lane_id)
        query += " ORDER BY id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        try:
            with sqlite3.connect(self.db_path) as conn:
                rows = conn.execute(query, params).fetchall()
        except Exception as e:
            logger.error(f"Error reading transitions: {e}")
            return []

        return [
            {
                "lane_id": row[0],
                "from_state": row[1],
                "to_state": row[2],
                "reason": row[3],
                "payload": json.loads(row[4]) if row[4] else None,
                "forced": bool(row[5]),
                "timestamp": row[6],
            }
            for row in rows
        ]

    def get_rejection_counts(self) -> Dict[str, int]:
        try:
            with sqlite3.connect(self.db_path) as conn:
                rows = conn.execute(
                    "SELECT category, COUNT(*) FROM rejections GROUP BY category ORDER BY COUNT(*) DESC"
                ).fetchall()
        except Exception as e:
            logger.error(f"Error reading rejection counts: {e}")
            return {}
        return {category: count for category, count in rows}

    def get_performance_stats(self, lane_id: Optional[str] = None) -> Dict[str, Any]:
        df = self.get_cycle_results(lane_id)
        if df.empty:
            return {'total_trades': 0}
        return {
            'total_trades': int(len(df)),
            'successful_trades': int(df['success'].sum()),
            'hit_rate': float(df['success'].mean() * 100),
            'total_net_profit': float(df['actual_net_profit'].sum()),
            'avg_net_profit': float(df['actual_net_profit'].mean()),
            'exit_reasons': df['exit_reason'].value_counts().to_dict(),
        }

    def export_to_csv(self, filepath: str, table: str = "cycle_results"):
        if table not in ("cycle_results", "state_transitions", "rejections", "audit_reports"):
            raise ValueError(f"Unknown table: {table}")
        with sqlite3.connect(self.db_path) as conn:
            df = pd.read_sql_query(f"SELECT * FROM {table}", conn)
        df.to_csv(filepath, index=False)
        logger.info(f"Exported {table} to {filepath}")
