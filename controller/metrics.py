"""
Reconciliation statistics and Prometheus text exposition
"""

import threading
import time
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional


@dataclass
class ReconciliationStats:
    """Statistics for one sync pass over all watched objects"""
    objects_seen: int = 0
    reconciled: int = 0
    errors: int = 0
    configuration_errors: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def duration_seconds(self) -> float:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0

    def to_dict(self) -> dict:
        return {
            **asdict(self),
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_seconds': self.duration_seconds()
        }


COUNTERS = {
    "roles_created": "Roles created on the database server",
    "roles_altered": "Role passwords reset to the declared credential",
    "roles_dropped": "Roles dropped on teardown",
    "databases_created": "Databases created on the database server",
    "databases_dropped": "Databases dropped on teardown",
    "finalizers_removed": "Finalizers removed after cleanup",
}


class Metrics:
    """Simple in-memory metrics for Prometheus exposition"""

    def __init__(self):
        # workers bump counters concurrently
        self._lock = threading.Lock()
        self.reconciliation_count = 0
        self.last_reconciliation_timestamp = 0
        self.objects_managed = 0
        self.error_count = 0
        self.last_error_timestamp = 0
        self.counters = {name: 0 for name in COUNTERS}

    def increment(self, name: str, value: int = 1):
        with self._lock:
            self.counters[name] = self.counters.get(name, 0) + value

    def record_reconciliation(self, stats: ReconciliationStats):
        """Record metrics from a sync pass"""
        with self._lock:
            self.reconciliation_count += 1
            self.last_reconciliation_timestamp = time.time()
            self.objects_managed = stats.objects_seen
            self.error_count += stats.errors
            if stats.errors > 0:
                self.last_error_timestamp = time.time()

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format"""
        with self._lock:
            lines = [
                "# HELP site_operator_reconciliations_total Total number of sync passes",
                "# TYPE site_operator_reconciliations_total counter",
                f"site_operator_reconciliations_total {self.reconciliation_count}",
                "",
                "# HELP site_operator_last_reconciliation_timestamp Timestamp of last sync pass",
                "# TYPE site_operator_last_reconciliation_timestamp gauge",
                f"site_operator_last_reconciliation_timestamp {self.last_reconciliation_timestamp}",
                "",
                "# HELP site_operator_objects_managed Objects seen in the last sync pass",
                "# TYPE site_operator_objects_managed gauge",
                f"site_operator_objects_managed {self.objects_managed}",
                "",
                "# HELP site_operator_errors_total Total failed reconciles",
                "# TYPE site_operator_errors_total counter",
                f"site_operator_errors_total {self.error_count}",
                "",
                "# HELP site_operator_last_error_timestamp Timestamp of last failed reconcile",
                "# TYPE site_operator_last_error_timestamp gauge",
                f"site_operator_last_error_timestamp {self.last_error_timestamp}",
            ]
            for name, help_text in COUNTERS.items():
                lines += [
                    "",
                    f"# HELP site_operator_{name}_total {help_text}",
                    f"# TYPE site_operator_{name}_total counter",
                    f"site_operator_{name}_total {self.counters.get(name, 0)}",
                ]
        return "\n".join(lines) + "\n"
