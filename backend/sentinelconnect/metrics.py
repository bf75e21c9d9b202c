from __future__ import annotations

import threading
from typing import Dict, Tuple

# In-memory metrics registry (single-process): counters and summaries (sum, count)

_LabelKey = Tuple[str, Tuple[Tuple[str, str], ...]]

_lock = threading.Lock()
_counters: Dict[_LabelKey, float] = {}
_summaries: Dict[_LabelKey, Tuple[float, int]] = {}


def _key(name: str, labels: Dict[str, str] | None) -> _LabelKey:
    return name, tuple(sorted((labels or {}).items()))


def counter_inc(name: str, labels: Dict[str, str] | None = None, amount: float = 1.0) -> None:
    with _lock:
        k = _key(name, labels)
        _counters[k] = _counters.get(k, 0.0) + float(amount)


def counter_value(name: str, labels: Dict[str, str] | None = None) -> float:
    with _lock:
        return _counters.get(_key(name, labels), 0.0)


def summary_observe(name: str, value: float, labels: Dict[str, str] | None = None) -> None:
    with _lock:
        k = _key(name, labels)
        s, c = _summaries.get(k, (0.0, 0))
        _summaries[k] = (s + float(value), c + 1)


def reset() -> None:
    with _lock:
        _counters.clear()
        _summaries.clear()


def _fmt_labels(items: Tuple[Tuple[str, str], ...]) -> str:
    if not items:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in items) + "}"


def render_prometheus() -> str:
    lines: list[str] = []
    with _lock:
        for (name, items), val in sorted(_counters.items()):
            lines.append(f"# TYPE {name} counter")
            lines.append(f"{name}{_fmt_labels(items)} {val}")
        for (name, items), (s, c) in sorted(_summaries.items()):
            lines.append(f"# TYPE {name} summary")
            lines.append(f"{name}_sum{_fmt_labels(items)} {s}")
            lines.append(f"{name}_count{_fmt_labels(items)} {c}")
    return "\n".join(lines) + "\n"
