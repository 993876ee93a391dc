# data_gateway/utils/stats.py
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict


@dataclass
class GatewayStats:
    """In-process counters reported by the /metrics endpoint."""
    started_at: float = field(default_factory=time.time)
    batches_processed: int = 0
    batches_rejected: int = 0
    records_received: int = 0
    records_succeeded: int = 0
    records_failed: int = 0

    def record_batch(self, received: int, succeeded: int) -> None:
        self.batches_processed += 1
        self.records_received += received
        self.records_succeeded += succeeded
        self.records_failed += received - succeeded

    def record_rejection(self, received: int) -> None:
        self.batches_rejected += 1
        self.records_received += received

    def snapshot(self) -> Dict[str, Any]:
        data = asdict(self)
        data["uptime_seconds"] = round(time.time() - self.started_at, 3)
        return data


gateway_stats = GatewayStats()
