"""Node lifecycle hooks for the LangGraph workflows.

Provides guard_node(), a factory that wraps every registered node with:

  - before/after lifecycle events (started / completed / failed), timed with
    agent.metrics.MetricsCollector and passed to an optional emit_event
    callback (the service uses it to keep per-run node timings);
  - defect containment: a node that raises is converted into the same error
    patch shape a node produces for an expected failure,
    ``{"error": ..., "current_node": <node>}``, so routing (retry/error)
    decides what happens next instead of the exception unwinding the run.

The wrapper accepts (state, config=None).  LangGraph inspects the function
signature and passes the RunnableConfig when the node declares it, which
gives us the thread_id (= session id) without touching node internals.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Optional

from langchain_core.runnables import RunnableConfig

from nflow_agent.agent.metrics import MetricsCollector

logger = logging.getLogger("nflow_agent.persistence.hooks")

#: Exception class names that belong to LangGraph's own control flow and must
#: propagate untouched.  Checked by name to avoid importing langgraph internals.
_CONTROL_FLOW_CLASS_NAMES: frozenset[str] = frozenset({
    "GraphInterrupt",
    "NodeInterrupt",
    "GraphRecursionError",
    "ParentCommand",
})


# ---------------------------------------------------------------------------
# Node summary helpers
# ---------------------------------------------------------------------------

def _node_summary(node_name: str, result: Any) -> str | None:
    """Extract a compact (≤200 char) human-readable summary from a node patch."""
    if not isinstance(result, dict):
        return None
    if result.get("error"):
        return f"error: {str(result['error'])[:190]}"

    match node_name:
        case "classify_intent":
            intents = (result.get("classified_intent") or {}).get("intents") or []
            return f"Classified {len(intents)} intent(s)"
        case "process_next_intent":
            idx = result.get("current_intent_index")
            return f"Next intent index: {idx}" if idx is not None else None
        case "app_executor" | "object_executor":
            er = result.get("execution_result") or {}
            steps = len(er.get("completed_steps") or [])
            return f"Execution {er.get('status', 'unknown')} ({steps} step(s) done)"
        case "handle_retry":
            return f"Retry #{result.get('retry_count')}"

    return None


# ---------------------------------------------------------------------------
# Node wrapper
# ---------------------------------------------------------------------------

def guard_node(
    node_name: str,
    fn: Callable,
    emit_event: Callable | None = None,
) -> Callable:
    """Return a wrapped version of *fn* that emits lifecycle events and contains defects.

    Args:
        node_name:   Registered LangGraph node name (e.g. "classify_intent").
        fn:          Node callable ``(state) -> dict`` (sync or async).
        emit_event:  Optional async callable receiving keyword args
                     session_id, node_name, status, duration_ms, summary.
    """

    async def _emit(**kwargs: Any) -> None:
        if emit_event is None:
            return
        try:
            await emit_event(**kwargs)
        except Exception:
            logger.warning("emit_event failed for %s", node_name, exc_info=True)

    async def guarded(state: Any, config: Optional[RunnableConfig] = None) -> dict:
        session_id: str = ""
        if config is not None:
            session_id = (config.get("configurable") or {}).get("thread_id", "")

        await _emit(session_id=session_id, node_name=node_name, status="started")

        async with MetricsCollector(node_name) as m:
            try:
                result = fn(state)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:
                if type(exc).__name__ in _CONTROL_FLOW_CLASS_NAMES:
                    raise
                logger.exception("[%s] unexpected failure", node_name.upper())
                m.failed = True
                result = {
                    "error": f"Unexpected failure in {node_name}: {exc}",
                    "current_node": node_name,
                }

        await _emit(
            session_id=session_id,
            node_name=node_name,
            status="failed" if m.failed else "completed",
            duration_ms=m.to_dict().get("duration_ms"),
            summary=_node_summary(node_name, result),
        )
        return result

    guarded.__name__ = getattr(fn, "__name__", node_name)
    guarded.__qualname__ = getattr(fn, "__qualname__", node_name)
    return guarded
