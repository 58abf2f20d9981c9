"""
Execution history and recommendation call log.

Durable record of every execution cycle, plus read-side aggregates used by
the control server:
- summarize: totals, success rate, last 24h window, latest execution
- analyze: per-protocol executed/skipped breakdown over the latest 200 cycles

A cycle counts as successful when it executed a non-zero amount.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.models import Action, ExecutionRecord, parse_timestamp, round_usd

logger = logging.getLogger(__name__)

ANALYTICS_WINDOW = 200
TOP_PROTOCOLS = 10


class ExecutionHistory:
    """
    SQLite-backed execution log.

    One connection per operation; writes are serialized with a lock so the
    scheduler thread and the control server can share an instance.
    """

    def __init__(self, db_file: str = "data/history.db"):
        self.db_file = Path(db_file)
        self.db_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_sqlite()
        logger.info(f"ExecutionHistory initialized at {self.db_file}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_file))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_sqlite(self):
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS executions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account TEXT NOT NULL,
                    delegate TEXT NOT NULL,
                    generated_at TIMESTAMP NOT NULL,
                    summary TEXT NOT NULL,
                    total_executed_usd REAL NOT NULL,
                    remaining_daily_limit_usd REAL NOT NULL,
                    actions TEXT NOT NULL,
                    analysis TEXT,
                    warnings TEXT,
                    model TEXT,
                    provider TEXT,
                    fallback_used INTEGER NOT NULL DEFAULT 0,
                    suggested_actions TEXT,
                    evaluation TEXT,
                    governance_summary TEXT,
                    created_at TIMESTAMP NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS recommendation_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account TEXT NOT NULL,
                    delegate TEXT NOT NULL,
                    model TEXT,
                    provider TEXT,
                    status TEXT NOT NULL,
                    latency_ms REAL,
                    fallback_used INTEGER NOT NULL DEFAULT 0,
                    prompt TEXT,
                    response TEXT,
                    error_message TEXT,
                    created_at TIMESTAMP NOT NULL
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_exec_account ON executions(account, generated_at)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_reclog_account ON recommendation_log(account, created_at)")
            conn.commit()
        finally:
            conn.close()

    # ─── Executions ─────────────────────────────────────────────────────

    def append(self, record: ExecutionRecord) -> int:
        """
        Persist one execution record.

        Returns:
            Row id of the new record

        Raises:
            sqlite3.Error: Write failed; the caller decides what that means
        """
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO executions (
                        account, delegate, generated_at, summary, total_executed_usd,
                        remaining_daily_limit_usd, actions, analysis, warnings,
                        model, provider, fallback_used, suggested_actions, evaluation,
                        governance_summary, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.account.lower(),
                        record.delegate,
                        record.generated_at.astimezone(timezone.utc).isoformat(),
                        record.summary,
                        record.total_executed_usd,
                        record.remaining_daily_limit_usd,
                        json.dumps([a.to_dict() for a in record.actions]),
                        record.analysis,
                        json.dumps(list(record.warnings)),
                        record.model,
                        record.provider,
                        1 if record.fallback_used else 0,
                        json.dumps(list(record.suggested_actions)),
                        json.dumps(record.evaluation) if record.evaluation is not None else None,
                        record.governance_summary,
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                conn.commit()
                row_id = cursor.lastrowid
            finally:
                conn.close()

        logger.info(
            f"Logged execution #{row_id}: {record.account} executed "
            f"{record.total_executed_usd:.2f} USD, remaining {record.remaining_daily_limit_usd:.2f} USD"
        )
        return row_id

    def list(self, account: str, limit: int = 10) -> List[ExecutionRecord]:
        """Most recent executions for an account, newest first."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM executions WHERE account = ? ORDER BY generated_at DESC, id DESC LIMIT ?",
                (account.lower(), max(0, int(limit))),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_record(row) for row in rows]

    def summarize(self, account: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        normalized = account.lower()
        now = now or datetime.now(timezone.utc)
        since = (now - timedelta(hours=24)).isoformat()

        conn = self._connect()
        try:
            totals = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(total_executed_usd), 0) AS volume,
                    SUM(CASE WHEN total_executed_usd > 0 THEN 1 ELSE 0 END) AS successes
                FROM executions WHERE account = ?
                """,
                (normalized,),
            ).fetchone()
            window = conn.execute(
                """
                SELECT COUNT(*) AS total, COALESCE(SUM(total_executed_usd), 0) AS volume
                FROM executions WHERE account = ? AND generated_at >= ?
                """,
                (normalized, since),
            ).fetchone()
            last = conn.execute(
                "SELECT * FROM executions WHERE account = ? ORDER BY generated_at DESC, id DESC LIMIT 1",
                (normalized,),
            ).fetchone()
        finally:
            conn.close()

        total = totals["total"] or 0
        volume = float(totals["volume"] or 0.0)
        successes = totals["successes"] or 0

        summary: Dict[str, Any] = {
            "account": normalized,
            "total_executions": total,
            "executed_volume_usd": round_usd(volume),
            "average_executed_usd": round_usd(volume / total) if total else 0.0,
            "success_count": successes,
            "success_rate": round(successes / total, 4) if total else 0.0,
            "last_24h": {
                "count": window["total"] or 0,
                "volume_usd": round_usd(window["volume"] or 0.0),
            },
            "last_execution": None,
        }
        if last is not None:
            summary["last_execution"] = {
                "generated_at": last["generated_at"],
                "total_executed_usd": round_usd(last["total_executed_usd"]),
                "remaining_daily_limit_usd": round_usd(last["remaining_daily_limit_usd"]),
                "summary": last["summary"],
            }
        return summary

    def analyze(self, account: str) -> Dict[str, Any]:
        """Per-protocol breakdown over the latest ANALYTICS_WINDOW executions."""
        records = self.list(account, limit=ANALYTICS_WINDOW)
        normalized = account.lower()
        if not records:
            return {
                "account": normalized,
                "total_executions": 0,
                "success_rate": 0.0,
                "total_executed_usd": 0.0,
                "executed_protocols": 0,
                "top_protocols": [],
                "last_execution_at": None,
            }

        stats: Dict[str, Dict[str, Any]] = {}
        total_executed = 0.0
        successes = 0

        for record in records:
            executed_in_record = 0.0
            for action in record.actions:
                entry = stats.setdefault(action.protocol, {
                    "protocol": action.protocol,
                    "executed_usd": 0.0,
                    "executed_count": 0,
                    "skipped_count": 0,
                    "_apy": 0.0,
                    "_risk": 0.0,
                })
                if action.status == "executed":
                    entry["executed_usd"] = round_usd(entry["executed_usd"] + action.amount_usd)
                    entry["executed_count"] += 1
                    entry["_apy"] += action.expected_apy
                    entry["_risk"] += action.risk_score
                    executed_in_record += action.amount_usd
                else:
                    entry["skipped_count"] += 1
            if executed_in_record > 0:
                successes += 1
            total_executed = round_usd(total_executed + executed_in_record)

        protocols = []
        for entry in stats.values():
            count = entry["executed_count"]
            protocols.append({
                "protocol": entry["protocol"],
                "executed_usd": round_usd(entry["executed_usd"]),
                "executed_count": count,
                "skipped_count": entry["skipped_count"],
                "average_apy": round(entry["_apy"] / count, 2) if count else 0.0,
                "average_risk": round(entry["_risk"] / count, 2) if count else 0.0,
            })
        # Stable sort keeps first-seen order among equal volumes
        protocols.sort(key=lambda p: p["executed_usd"], reverse=True)

        return {
            "account": normalized,
            "total_executions": len(records),
            "success_rate": round(successes / len(records), 2),
            "total_executed_usd": round_usd(total_executed),
            "executed_protocols": len(protocols),
            "top_protocols": protocols[:TOP_PROTOCOLS],
            "last_execution_at": records[0].generated_at.isoformat(),
        }

    # ─── Recommendation call log ─────────────────────────────────────────

    def record_call(
        self,
        account: str,
        delegate: str,
        model: str,
        provider: str,
        status: str,
        latency_ms: float,
        fallback_used: bool,
        prompt: str,
        response: str,
        error_message: Optional[str] = None,
    ) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT INTO recommendation_log (
                        account, delegate, model, provider, status, latency_ms,
                        fallback_used, prompt, response, error_message, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        account.lower(), delegate, model, provider, status,
                        round(latency_ms, 2), 1 if fallback_used else 0,
                        prompt, response, error_message,
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                conn.commit()
            finally:
                conn.close()

    def list_calls(self, account: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            if account:
                rows = conn.execute(
                    "SELECT * FROM recommendation_log WHERE account = ? ORDER BY id DESC LIMIT ?",
                    (account.lower(), max(0, int(limit))),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM recommendation_log ORDER BY id DESC LIMIT ?",
                    (max(0, int(limit)),),
                ).fetchall()
        finally:
            conn.close()

        calls = []
        for row in rows:
            call = dict(row)
            call["fallback_used"] = bool(call["fallback_used"])
            calls.append(call)
        return calls

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ExecutionRecord:
        actions = json.loads(row["actions"]) if row["actions"] else []
        warnings = json.loads(row["warnings"]) if row["warnings"] else []
        suggested = json.loads(row["suggested_actions"]) if row["suggested_actions"] else []
        return ExecutionRecord(
            account=row["account"],
            delegate=row["delegate"],
            generated_at=parse_timestamp(row["generated_at"]),
            summary=row["summary"],
            total_executed_usd=row["total_executed_usd"],
            remaining_daily_limit_usd=row["remaining_daily_limit_usd"],
            actions=tuple(Action.from_dict(a) for a in actions),
            analysis=row["analysis"] or "",
            warnings=tuple(warnings),
            model=row["model"],
            provider=row["provider"],
            fallback_used=bool(row["fallback_used"]),
            suggested_actions=tuple(suggested),
            evaluation=json.loads(row["evaluation"]) if row["evaluation"] else None,
            governance_summary=row["governance_summary"] or "",
        )


__all__ = ["ExecutionHistory", "ANALYTICS_WINDOW", "TOP_PROTOCOLS"]
