"""Progress tracking for batch processing pipelines."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ProgressTracker:
    """Counts finished work units and reports rate, errors and failures.

    Example:
        tracker = ProgressTracker(total_items=40, stage="enrichment")

        for item in items:
            try:
                process(item)
                tracker.increment(success=True)
            except Exception as exc:
                tracker.increment(success=False, item_id=item.id, error=str(exc))

            if tracker.should_log():
                tracker.log_progress()

        tracker.log_summary()
    """

    def __init__(
        self,
        total_items: int,
        stage: str,
        *,
        log_interval: int = 10,
        log_time_interval: int = 30,
    ):
        """Initialize progress tracker.

        Args:
            total_items: Number of work units expected in this run
            stage: Label included in every log line
            log_interval: Number of items between logs
            log_time_interval: Seconds between time-based logs
        """
        self.total_items = total_items
        self.stage = stage
        self.log_interval = log_interval
        self.log_time_interval = log_time_interval

        self.start_time = time.time()
        self.processed_count = 0
        self.success_count = 0
        self.error_count = 0
        self.failures: List[Dict[str, str]] = []
        self.lock = threading.Lock()
        self.last_log_time = self.start_time
        self.last_log_count = 0

    def increment(
        self,
        success: bool = True,
        *,
        item_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Increment counters.

        Args:
            success: Whether processing succeeded
            item_id: Identifier recorded with a failure
            error: Failure message recorded with a failure
        """
        with self.lock:
            self.processed_count += 1
            if success:
                self.success_count += 1
            else:
                self.error_count += 1
                if item_id is not None:
                    self.failures.append({"id": item_id, "error": error or "unknown error"})

    def should_log(self) -> bool:
        """Check if progress should be logged."""
        with self.lock:
            count_trigger = self.processed_count - self.last_log_count >= self.log_interval
            time_trigger = time.time() - self.last_log_time >= self.log_time_interval
            return count_trigger or time_trigger

    def log_progress(self, extra_stats: Optional[Dict[str, Any]] = None) -> None:
        """Log current progress with all metrics."""
        with self.lock:
            elapsed_minutes = (time.time() - self.start_time) / 60
            rate = self.processed_count / elapsed_minutes if elapsed_minutes > 0 else 0
            percent = (
                (self.processed_count / self.total_items * 100)
                if self.total_items > 0
                else 0
            )

            parts = [
                f"Progress: {self.processed_count:,}/{self.total_items:,} ({percent:.1f}%)",
                f"Rate: {rate:.1f} items/min",
            ]

            if extra_stats:
                for key, value in extra_stats.items():
                    if isinstance(value, float):
                        parts.append(f"{key}: {value:.1f}")
                    else:
                        parts.append(f"{key}: {value}")

            parts.extend([
                f"Errors: {self.error_count}",
                f"Stage: {self.stage}",
            ])

            logger.info(" | ".join(parts))

            self.last_log_time = time.time()
            self.last_log_count = self.processed_count

    def log_summary(self) -> None:
        """Log final summary."""
        elapsed_seconds = time.time() - self.start_time

        summary_parts = [
            f"Total processed: {self.processed_count:,}",
            f"Successful: {self.success_count:,}",
            f"Errors: {self.error_count:,}",
            f"Time: {elapsed_seconds:.1f}s",
            f"Stage: {self.stage}",
        ]
        for failure in self.failures[:10]:
            summary_parts.append(f"Failed {failure['id']}: {failure['error']}")

        logger.info("Batch Processing Complete:\n  " + "\n  ".join(summary_parts))

    def get_stats(self) -> Dict[str, Any]:
        """Get current progress statistics."""
        with self.lock:
            return {
                "processed": self.processed_count,
                "successful": self.success_count,
                "errors": self.error_count,
                "total": self.total_items,
                "elapsed_seconds": time.time() - self.start_time,
                "failures": list(self.failures),
                "stage": self.stage,
            }
