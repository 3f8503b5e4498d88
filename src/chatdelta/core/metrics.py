"""
Per-provider metrics for one run or one interactive session.

The collector is an explicit accumulator owned by the orchestrator; it is
reset at session boundaries and never shared across sessions. ``record`` is
called once per terminal outcome (not once per internal retry) and credits
every attempt the outcome represents, so ``attempts == successes + failures``
holds for each provider at all times.
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from chatdelta.core.providers.base import Provider
from chatdelta.core.resilience import QueryOutcome

logger = logging.getLogger(__name__)


@dataclass
class SessionMetrics:
    """
    Mutable accumulator for one provider.

    Attributes:
        attempts: Provider calls made (including retries)
        successes: Attempts that returned content
        failures: Attempts that failed
        total_latency_ms: Sum of terminal outcome latencies
        total_tokens: Tokens reported by successful outcomes
        latencies_ms: Terminal outcome latencies, in record order
    """

    attempts: int = 0
    successes: int = 0
    failures: int = 0
    total_latency_ms: int = 0
    total_tokens: int = 0
    latencies_ms: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class ProviderSummary:
    """Read-only statistics derived from a provider's SessionMetrics."""

    provider: str
    attempts: int
    successes: int
    failures: int
    success_rate: float
    mean_latency_ms: float
    p50_latency_ms: int
    p95_latency_ms: int
    total_tokens: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def percentile(values: List[int], pct: float) -> int:
    """Nearest-rank percentile of ``values`` (0 for an empty list)."""
    if not values:
        return 0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
    return ordered[rank - 1]


class MetricsCollector:
    """
    Accumulates per-provider success/failure counts, latencies and tokens.

    Example:
        metrics = MetricsCollector()
        metrics.record(Provider.GPT, outcome)
        print(metrics.summary()["gpt"].success_rate)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics: Dict[Provider, SessionMetrics] = {}
        self._started_at = datetime.now(timezone.utc)
        self._started_clock = time.monotonic()

    def record(self, provider: Provider, outcome: QueryOutcome) -> None:
        """
        Record one terminal outcome for a provider.

        A Success after K failed attempts counts K failures and one success;
        a Failure counts every attempt it made as a failure.
        """
        attempts = max(1, outcome.attempts)
        with self._lock:
            metrics = self._metrics.setdefault(provider, SessionMetrics())
            metrics.attempts += attempts
            if outcome.success:
                metrics.successes += 1
                metrics.failures += attempts - 1
                metrics.total_tokens += outcome.total_tokens
            else:
                metrics.failures += attempts
            metrics.total_latency_ms += outcome.latency_ms
            metrics.latencies_ms.append(outcome.latency_ms)

        logger.debug(
            "Recorded %s outcome for %s (%d attempt(s), %dms)",
            "success" if outcome.success else "failure",
            provider.value,
            attempts,
            outcome.latency_ms,
        )

    def get(self, provider: Provider) -> SessionMetrics:
        """Return a copy of a provider's accumulator (zeros if unseen)."""
        with self._lock:
            current = self._metrics.get(provider)
            if current is None:
                return SessionMetrics()
            return SessionMetrics(
                attempts=current.attempts,
                successes=current.successes,
                failures=current.failures,
                total_latency_ms=current.total_latency_ms,
                total_tokens=current.total_tokens,
                latencies_ms=list(current.latencies_ms),
            )

    def summary(self) -> Dict[str, ProviderSummary]:
        """Per-provider statistics keyed by provider tag, in enable order."""
        with self._lock:
            snapshot = {p: self._metrics[p] for p in Provider if p in self._metrics}
            result: Dict[str, ProviderSummary] = {}
            for provider, m in snapshot.items():
                count = len(m.latencies_ms)
                result[provider.value] = ProviderSummary(
                    provider=provider.value,
                    attempts=m.attempts,
                    successes=m.successes,
                    failures=m.failures,
                    success_rate=(m.successes / m.attempts) if m.attempts else 0.0,
                    mean_latency_ms=(m.total_latency_ms / count) if count else 0.0,
                    p50_latency_ms=percentile(m.latencies_ms, 50),
                    p95_latency_ms=percentile(m.latencies_ms, 95),
                    total_tokens=m.total_tokens,
                )
        return result

    def session_summary(self) -> Dict[str, Any]:
        """Overall statistics for the session plus the per-provider breakdown."""
        providers = self.summary()
        total_attempts = sum(s.attempts for s in providers.values())
        total_successes = sum(s.successes for s in providers.values())
        with self._lock:
            latencies = [ms for m in self._metrics.values() for ms in m.latencies_ms]

        return {
            "start_time": self._started_at.isoformat(),
            "duration_seconds": int(time.monotonic() - self._started_clock),
            "total_requests": total_attempts,
            "success_rate": (total_successes / total_attempts) if total_attempts else 0.0,
            "average_latency_ms": int(sum(latencies) / len(latencies)) if latencies else 0,
            "total_tokens": sum(s.total_tokens for s in providers.values()),
            "providers": {name: s.to_dict() for name, s in providers.items()},
        }

    def export_json(self) -> str:
        return json.dumps(self.session_summary(), indent=2)

    def save_to_file(self, path: Union[str, Path]) -> Path:
        """Write the session summary as pretty-printed JSON."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.export_json() + "\n", encoding="utf-8")
        logger.info("Saved metrics to %s", target)
        return target

    def reset(self) -> None:
        """Clear all accumulators and restart the session clock."""
        with self._lock:
            self._metrics.clear()
            self._started_at = datetime.now(timezone.utc)
            self._started_clock = time.monotonic()

    def is_consistent(self, provider: Optional[Provider] = None) -> bool:
        """Check ``attempts == successes + failures`` for one or all providers."""
        with self._lock:
            items = (
                [self._metrics.get(provider, SessionMetrics())]
                if provider is not None
                else list(self._metrics.values())
            )
            return all(m.attempts == m.successes + m.failures for m in items)
