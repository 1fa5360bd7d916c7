# src/lorekeeper/latency_tracker.py
import collections
import logging
import threading
from datetime import datetime, UTC
from typing import Any, Deque, Dict, Optional

import numpy as np

logger = logging.getLogger(__name__)

# Share of the total turn budget granted to each retrieval stage
STAGE_BUDGET_FRACTIONS = {
    "embed": 0.25,
    "semantic": 0.25,
    "lexical": 0.15,
    "graph": 0.20,
    "rank": 0.10,
    "assemble": 0.05,
}

# Minimum number of turns before the alert state is evaluated
MIN_ALERT_SAMPLES = 10


class RetrievalLatencyTracker:
    """
    Rolling latency statistics for per-turn retrieval.

    Each stage of a turn (query embedding, the three signals, ranking and
    evidence assembly) and the turn total are kept in a sliding window. A
    stage that runs over its budget is counted; when the share of turns over
    the total budget reaches ``alert_threshold`` the tracker enters an alert
    state until the share drops again.
    """

    def __init__(
        self,
        window_size: int = 100,
        alert_threshold: float = 0.95,
        default_budget_ms: float = 200.0,
    ):
        """
        Initialize the latency tracker.

        Args:
            window_size: Number of measurements kept per stage
            alert_threshold: Share of over-budget turns that raises an alert
            default_budget_ms: Budget for a whole retrieval turn in milliseconds
        """
        self.window_size = window_size
        self.alert_threshold = alert_threshold

        self.budgets_ms = {"total": default_budget_ms}
        for stage, fraction in STAGE_BUDGET_FRACTIONS.items():
            self.budgets_ms[stage] = default_budget_ms * fraction

        self.latencies: Dict[str, Deque[float]] = {
            stage: collections.deque(maxlen=window_size) for stage in self.budgets_ms
        }
        self.exceeded: Dict[str, Deque[int]] = {
            stage: collections.deque(maxlen=window_size) for stage in self.budgets_ms
        }

        self.alert_status = False
        self.alert_count = 0
        self.alert_last_triggered: Optional[datetime] = None

        self.lock = threading.RLock()
        self.created_at = datetime.now(UTC)
        self.last_reset = self.created_at

        logger.info(
            f"Initialized latency tracker (window={window_size}, "
            f"alert_threshold={alert_threshold}, budget={default_budget_ms}ms)"
        )

    def record(self, stage: str, latency_ms: float) -> None:
        """
        Record one measurement for a stage.

        Stages without a configured budget are tracked without budget checks.

        Args:
            stage: Stage name, e.g. "semantic" or "total"
            latency_ms: Measured latency in milliseconds
        """
        with self.lock:
            if stage not in self.latencies:
                logger.debug(f"Tracking new latency stage: {stage}")
                self.latencies[stage] = collections.deque(maxlen=self.window_size)
                self.exceeded[stage] = collections.deque(maxlen=self.window_size)
            self.latencies[stage].append(latency_ms)

            budget = self.budgets_ms.get(stage)
            over = budget is not None and latency_ms > budget
            self.exceeded[stage].append(1 if over else 0)

            if stage == "total":
                if over:
                    logger.warning(
                        f"Retrieval turn took {latency_ms:.1f}ms, "
                        f"over the {budget:.0f}ms budget"
                    )
                if len(self.exceeded["total"]) >= MIN_ALERT_SAMPLES:
                    self._update_alert_status()

    def record_turn(self, latencies: Dict[str, float]) -> None:
        """
        Record every stage measured for one turn.

        Args:
            latencies: Mapping of stage name to latency in milliseconds
        """
        with self.lock:
            for stage, latency_ms in latencies.items():
                self.record(stage, latency_ms)

    def set_budget(self, stage: str, budget_ms: float) -> None:
        with self.lock:
            self.budgets_ms[stage] = budget_ms
            logger.info(f"Set latency budget for {stage}: {budget_ms}ms")

    def get_statistics(self, stage: Optional[str] = None) -> Dict[str, Any]:
        """
        Get latency statistics for one stage or for all of them.

        Args:
            stage: Optional stage name; None returns every stage with data

        Returns:
            Statistics dictionary
        """
        with self.lock:
            if stage:
                return self._stage_statistics(stage)

            return {
                "stages": {
                    name: self._stage_statistics(name)
                    for name, values in self.latencies.items()
                    if values
                },
                "overall": {
                    "budget_exceeded_rate": self._exceeded_rate("total"),
                    "alert_status": self.alert_status,
                    "alert_count": self.alert_count,
                    "alert_last_triggered": (
                        self.alert_last_triggered.isoformat()
                        if self.alert_last_triggered
                        else None
                    ),
                    "created_at": self.created_at.isoformat(),
                    "last_reset": self.last_reset.isoformat(),
                },
            }

    def _stage_statistics(self, stage: str) -> Dict[str, Any]:
        values = np.array(list(self.latencies.get(stage, [])), dtype=float)
        if values.size == 0:
            return {"count": 0}

        stats = {
            "count": int(values.size),
            "mean_ms": float(np.mean(values)),
            "median_ms": float(np.median(values)),
            "min_ms": float(np.min(values)),
            "max_ms": float(np.max(values)),
        }
        if values.size >= 10:
            p90, p95, p99 = np.percentile(values, [90, 95, 99])
            stats["p90_ms"] = float(p90)
            stats["p95_ms"] = float(p95)
            stats["p99_ms"] = float(p99)

        budget = self.budgets_ms.get(stage)
        if budget is not None:
            stats["budget_ms"] = budget
            stats["budget_exceeded_rate"] = self._exceeded_rate(stage)
        return stats

    def _exceeded_rate(self, stage: str) -> float:
        flags = self.exceeded.get(stage)
        if not flags:
            return 0.0
        return sum(flags) / len(flags)

    def should_alert(self) -> bool:
        return self.alert_status

    def _update_alert_status(self) -> None:
        rate = self._exceeded_rate("total")
        if rate >= self.alert_threshold:
            if not self.alert_status:
                self.alert_count += 1
                logger.warning(
                    f"Latency alert triggered: {rate:.1%} of turns over budget "
                    f"(threshold: {self.alert_threshold:.1%})"
                )
            self.alert_status = True
            self.alert_last_triggered = datetime.now(UTC)
        elif self.alert_status:
            logger.info(f"Latency alert resolved: {rate:.1%} of turns over budget")
            self.alert_status = False

    def reset(self) -> None:
        """Clear every measurement and the alert state."""
        with self.lock:
            for stage in self.latencies:
                self.latencies[stage].clear()
                self.exceeded[stage].clear()
            self.alert_status = False
            self.last_reset = datetime.now(UTC)
            logger.info("Latency tracker reset")

    def __str__(self) -> str:
        total = self._stage_statistics("total")
        if not total.get("count"):
            return "RetrievalLatencyTracker(no data)"
        return (
            f"RetrievalLatencyTracker(turns={total['count']}, "
            f"avg={total['mean_ms']:.1f}ms, "
            f"over_budget={self._exceeded_rate('total'):.1%}, "
            f"alert={'ON' if self.alert_status else 'off'})"
        )
