"""In-process counters and timings for price source and engine instrumentation.

Series are keyed by name plus a sorted label tuple, so
``price_source_failures|source=binance`` and
``price_source_failures|source=coingecko`` are tracked separately. The
resolver may run inside a web worker thread pool, hence the lock.
"""
from __future__ import annotations

import time
from collections import Counter
from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator, Mapping, Tuple, Union

MetricKey = Tuple[str, Tuple[Tuple[str, str], ...]]

_metric_lock = Lock()
_counters: Counter[MetricKey] = Counter()
# name -> [observation count, total seconds]
_timings: Dict[MetricKey, list] = {}


def _key(name: str, labels: Mapping[str, str] | None) -> MetricKey:
    if not labels:
        return name, ()
    return name, tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _render(key: MetricKey, suffix: str = "") -> str:
    name, labels = key
    if not labels:
        return name + suffix
    return f"{name}{suffix}|" + ",".join(f"{k}={v}" for k, v in labels)


def increment_metric(name: str, *, labels: Mapping[str, str] | None = None, value: int = 1) -> None:
    """Add ``value`` to a counter.

    Args:
        name: Counter name, e.g. ``price_source_attempts``.
        labels: Optional mapping such as ``{"source": "binance"}``.
        value: Amount to add (defaults to 1).
    """
    with _metric_lock:
        _counters[_key(name, labels)] += value


def observe_duration(name: str, seconds: float, *, labels: Mapping[str, str] | None = None) -> None:
    with _metric_lock:
        entry = _timings.setdefault(_key(name, labels), [0, 0.0])
        entry[0] += 1
        entry[1] += seconds


@contextmanager
def timed(name: str, *, labels: Mapping[str, str] | None = None) -> Iterator[None]:
    """Record the wall time of the block, also when it raises."""
    started = time.perf_counter()
    try:
        yield
    finally:
        observe_duration(name, time.perf_counter() - started, labels=labels)


def get_metric(name: str, *, labels: Mapping[str, str] | None = None) -> int:
    with _metric_lock:
        return _counters[_key(name, labels)]


def get_timing(name: str, *, labels: Mapping[str, str] | None = None) -> Tuple[int, float]:
    """``(observations, total_seconds)`` for a timing series."""
    with _metric_lock:
        count, total = _timings.get(_key(name, labels), (0, 0.0))
    return count, total


def get_metrics_snapshot() -> Dict[str, Union[int, float]]:
    """Flattened ``name|k=v`` view; timings appear as ``_count`` and ``_seconds``."""
    with _metric_lock:
        counters = dict(_counters)
        timings = {k: tuple(v) for k, v in _timings.items()}

    snapshot: Dict[str, Union[int, float]] = {_render(k): v for k, v in counters.items()}
    for key, (count, total) in timings.items():
        snapshot[_render(key, "_count")] = count
        snapshot[_render(key, "_seconds")] = round(total, 6)
    return snapshot


def reset_metrics() -> None:
    with _metric_lock:
        _counters.clear()
        _timings.clear()
