"""Per-node timing telemetry.

NodeMetrics      — frozen snapshot of one node execution's duration and outcome.
MetricsCollector — async context manager; call .result / .to_dict() after exit.
RunMetrics       — collects the NodeMetrics of one run (emit_event sink).

Usage::

    async with MetricsCollector("classify_intent") as m:
        patch = await node(state)
    m.to_dict()   # JSON-serialisable dict
"""

from __future__ import annotations

import dataclasses
import time
from typing import Any


# ---------------------------------------------------------------------------
# NodeMetrics dataclass
# ---------------------------------------------------------------------------


@dataclasses.dataclass
class NodeMetrics:
    """Timing snapshot for one node execution.

    Fields
    ------
    node:        Registered node name.
    start_ts:    Unix timestamp at node start (time.time()).
    end_ts:      Unix timestamp at node end.
    duration_ms: (end_ts - start_ts) * 1000.
    failed:      True when the node raised and was converted to an error patch.
    """

    node: str
    start_ts: float
    end_ts: float
    duration_ms: float
    failed: bool = False


# ---------------------------------------------------------------------------
# MetricsCollector async context manager
# ---------------------------------------------------------------------------


class MetricsCollector:
    """Async context manager that records one node's timing."""

    def __init__(self, node: str) -> None:
        self.node = node
        self.failed: bool = False
        self._start_ts: float = 0.0
        self._result: NodeMetrics | None = None

    async def __aenter__(self) -> "MetricsCollector":
        self._start_ts = time.time()
        return self

    async def __aexit__(self, *_args: object) -> None:
        end_ts = time.time()
        self._result = NodeMetrics(
            node=self.node,
            start_ts=self._start_ts,
            end_ts=end_ts,
            duration_ms=(end_ts - self._start_ts) * 1000,
            failed=self.failed,
        )

    @property
    def result(self) -> NodeMetrics | None:
        """Finalized NodeMetrics after the context manager exits, else None."""
        return self._result

    def to_dict(self) -> dict[str, Any]:
        """Return the finalized NodeMetrics as a JSON-serialisable dict.

        Returns an empty dict if called before the context manager has exited.
        """
        return dataclasses.asdict(self._result) if self._result is not None else {}


# ---------------------------------------------------------------------------
# Run-level sink
# ---------------------------------------------------------------------------


class RunMetrics:
    """Collects node lifecycle events per session; pass .record as emit_event."""

    def __init__(self) -> None:
        self._events: dict[str, list[dict[str, Any]]] = {}

    async def record(
        self,
        session_id: str,
        node_name: str,
        status: str,
        duration_ms: float | None = None,
        summary: str | None = None,
    ) -> None:
        if status == "started":
            return
        self._events.setdefault(session_id, []).append({
            "node": node_name,
            "status": status,
            "duration_ms": round(duration_ms or 0.0, 2),
            "summary": summary,
        })

    def pop(self, session_id: str) -> list[dict[str, Any]]:
        """Return and forget the events recorded for *session_id*."""
        return self._events.pop(session_id, [])
