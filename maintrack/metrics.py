"""
Synchronization metrics.

Counters and gauges are kept under short names (``feed_events_total``) and
exported with the ``maintrack_`` prefix in two shapes:
- a flat snapshot, logged with every ``app.status`` line
- Prometheus exposition text, written to a node-exporter textfile
"""

from __future__ import annotations

import os
import time
from collections import Counter
from pathlib import Path
from typing import Callable, Union

PREFIX = "maintrack_"

HELP = {
    "feed_events_total": "Change events received from the feed.",
    "refreshes_total": "Task list fetches completed by the listener.",
    "refresh_failures_total": "Listener fetches that failed.",
    "mutations_total": "Store mutations attempted.",
    "mutation_failures_total": "Store mutations that raised.",
    "tasks_cached": "Tasks in the last delivered list.",
    "uptime_seconds": "Seconds since the collector was created.",
}

Number = Union[int, float]


class MetricsCollector:
    """In-process counters and gauges for one sync session."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._counters: Counter[str] = Counter()
        self._gauges: dict[str, float] = {}
        self._clock = clock
        self._started = clock()

    def inc(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def set_gauge(self, name: str, value: float) -> None:
        self._gauges[name] = value

    def get(self, name: str) -> Number:
        if name in self._gauges:
            return self._gauges[name]
        return self._counters[name]

    def uptime(self) -> float:
        return self._clock() - self._started

    def snapshot(self) -> dict[str, Number]:
        """Flat name to value mapping, usable as structured log fields."""
        values: dict[str, Number] = dict(self._counters)
        values.update(self._gauges)
        values["uptime_seconds"] = round(self.uptime(), 1)
        return values

    def render(self) -> str:
        samples = [(name, value, "counter") for name, value in self._counters.items()]
        samples += [(name, value, "gauge") for name, value in self._gauges.items()]
        samples.append(("uptime_seconds", round(self.uptime(), 1), "gauge"))

        lines = []
        for name, value, kind in sorted(samples, key=lambda s: s[0]):
            full = PREFIX + name
            if name in HELP:
                lines.append(f"# HELP {full} {HELP[name]}")
            lines.append(f"# TYPE {full} {kind}")
            lines.append(f"{full} {value}")
        return "\n".join(lines) + "\n"

    def write_textfile(self, path: Union[str, Path]) -> None:
        """Replace `path` with the current exposition text.

        Written through a sibling temp file; readers see either the old text or
        the new one.
        """
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        staging = target.with_name(target.name + ".tmp")
        staging.write_text(self.render())
        os.replace(staging, target)
