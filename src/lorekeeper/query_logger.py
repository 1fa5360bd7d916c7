# src/lorekeeper/query_logger.py
import json
import logging
import sqlite3
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .database import SqliteDatabase

logger = logging.getLogger(__name__)


@dataclass
class RagQueryLogEntry:
    """One retrieval, recorded for offline quality analysis."""

    session_id: Optional[str]
    timestamp: int
    mode: str
    action_type: str
    query_text: str
    turn_number: Optional[int] = None
    seeds: List[str] = field(default_factory=list)
    weights: Dict[str, float] = field(default_factory=dict)
    semantic_hits_count: int = 0
    lexical_hits_count: int = 0
    graph_hits_count: int = 0
    total_candidates: int = 0
    final_results_count: int = 0
    top_results: List[Dict[str, Any]] = field(default_factory=list)  # {chunk_id, score, type}
    execution_time_ms: int = 0
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RagQueryLogger:
    """
    Structured retrieval log kept in the rag_query_logs table.

    Logging never interferes with retrieval: write failures are reduced to a
    warning.
    """

    def __init__(self, database: Optional[SqliteDatabase], enabled: bool = True):
        """
        Initialize the query logger.

        Args:
            database: Database holding the rag_query_logs table; None disables logging
            enabled: Whether entries are written
        """
        self.database = database
        self.enabled = enabled and database is not None

    def log(self, entry: RagQueryLogEntry) -> None:
        """
        Write one log entry.

        Args:
            entry: Entry to record; an id is generated if missing
        """
        if not self.enabled:
            return

        entry_id = entry.id or (
            f"rag-{entry.session_id or 'anonymous'}-{entry.timestamp}-"
            f"{uuid.uuid4().hex[:8]}"
        )
        try:
            self.database.execute(
                """
                INSERT INTO rag_query_logs
                (id, session_id, turn_number, timestamp, mode, action_type,
                 query_text, seeds, weights, semantic_hits_count,
                 lexical_hits_count, graph_hits_count, total_candidates,
                 final_results_count, top_results, execution_time_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry_id,
                    entry.session_id,
                    entry.turn_number,
                    entry.timestamp,
                    entry.mode,
                    entry.action_type,
                    entry.query_text,
                    json.dumps(entry.seeds),
                    json.dumps(entry.weights),
                    entry.semantic_hits_count,
                    entry.lexical_hits_count,
                    entry.graph_hits_count,
                    entry.total_candidates,
                    entry.final_results_count,
                    json.dumps(entry.top_results),
                    entry.execution_time_ms,
                ),
            )
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.warning(f"Failed to write retrieval log entry: {str(e)}")

    def get_recent_logs(
        self, session_id: Optional[str] = None, limit: int = 20
    ) -> List[RagQueryLogEntry]:
        """
        Most recent entries, newest first.

        Args:
            session_id: Optional session to restrict to
            limit: Maximum number of entries

        Returns:
            Log entries
        """
        if self.database is None:
            return []

        if session_id:
            rows = self.database.fetchall(
                "SELECT * FROM rag_query_logs WHERE session_id = ? "
                "ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                (session_id, limit),
            )
        else:
            rows = self.database.fetchall(
                "SELECT * FROM rag_query_logs ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                (limit,),
            )
        return [self._row_to_entry(row) for row in rows]

    def get_stats_by_action_type(
        self, session_id: Optional[str] = None
    ) -> Dict[str, Dict[str, float]]:
        """
        Query counts and average latency per action type.

        Returns:
            Mapping of action type to {"count", "avg_time_ms"}
        """
        if self.database is None:
            return {}

        sql = (
            "SELECT action_type, COUNT(*) AS count, AVG(execution_time_ms) AS avg_time_ms "
            "FROM rag_query_logs"
        )
        params = ()
        if session_id:
            sql += " WHERE session_id = ?"
            params = (session_id,)
        sql += " GROUP BY action_type"

        return {
            row["action_type"]: {
                "count": row["count"],
                "avg_time_ms": row["avg_time_ms"] or 0.0,
            }
            for row in self.database.fetchall(sql, params)
        }

    @staticmethod
    def _row_to_entry(row) -> RagQueryLogEntry:
        return RagQueryLogEntry(
            id=row["id"],
            session_id=row["session_id"],
            turn_number=row["turn_number"],
            timestamp=row["timestamp"],
            mode=row["mode"],
            action_type=row["action_type"],
            query_text=row["query_text"] or "",
            seeds=json.loads(row["seeds"] or "[]"),
            weights=json.loads(row["weights"] or "{}"),
            semantic_hits_count=row["semantic_hits_count"] or 0,
            lexical_hits_count=row["lexical_hits_count"] or 0,
            graph_hits_count=row["graph_hits_count"] or 0,
            total_candidates=row["total_candidates"] or 0,
            final_results_count=row["final_results_count"] or 0,
            top_results=json.loads(row["top_results"] or "[]"),
            execution_time_ms=row["execution_time_ms"] or 0,
        )
