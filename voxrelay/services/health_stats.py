"""
Process-wide pipeline counters for the health endpoint.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional


@dataclass
class HealthStats:
    """Monotonic counters; reset only with the process."""

    utterances_processed: int = 0
    utterances_dropped: int = 0
    commands_recognized: int = 0
    dispatches: int = 0
    dispatch_failures: int = 0
    errors: int = 0
    stt_failures: int = 0
    tts_failures: int = 0
    failed_wake_cues: int = 0
    started_at: float = field(default_factory=time.time)

    def incr(self, counter: str, amount: int = 1) -> None:
        setattr(self, counter, getattr(self, counter) + amount)

    def snapshot(self) -> dict[str, Any]:
        data = asdict(self)
        started_at = data.pop("started_at")
        data["uptime_seconds"] = round(time.time() - started_at, 1)
        return data


_health_stats: Optional[HealthStats] = None


def get_health_stats() -> HealthStats:
    global _health_stats
    if _health_stats is None:
        _health_stats = HealthStats()
    return _health_stats
