"""WorkflowBuilder — a fail-fast registration table on top of LangGraph's StateGraph.

Adds three things StateGraph does not check for us:

  1. Label contracts.  Every router declares its closed label vocabulary with
     @routes(...).  add_conditional_edges() requires the label→node mapping
     to cover exactly that vocabulary, and the router is wrapped so that a
     label outside it raises instead of silently falling through.
  2. Terminal and retry wiring.  add_handlers() registers handle_success,
     handle_error and handle_retry, edges both terminals to END, and wires
     the retry node from the workflow's declared RetryPolicy (ceiling plus a
     named resume target or resume router).
  3. Build-time validation.  build() checks that an entry exists, that every
     edge/mapping target is a registered node, and that every non-terminal
     node has a way out, then compiles.

Every node registered here is wrapped by persistence.hooks.guard_node so an
unexpected exception becomes an error patch instead of aborting the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from langgraph.graph import END, START, StateGraph

from nflow_agent.persistence.hooks import guard_node

logger = logging.getLogger("nflow_agent.agent.builder")

#: Canonical handler node names shared by every workflow.
SUCCESS_NODE = "handle_success"
ERROR_NODE = "handle_error"
RETRY_NODE = "handle_retry"


class GraphConfigError(Exception):
    """A workflow was wired inconsistently (raised at build time, or by a router at run time)."""


# ---------------------------------------------------------------------------
# Router label declaration
# ---------------------------------------------------------------------------


def routes(*labels: str) -> Callable[[Callable], Callable]:
    """Declare the closed set of edge labels a router may return.

    Usage::

        @routes("design", "retry", "error")
        def route_after_understanding(state) -> str: ...
    """

    def _decorate(fn: Callable) -> Callable:
        fn.labels = frozenset(labels)  # type: ignore[attr-defined]
        return fn

    return _decorate


def router_labels(router: Callable) -> frozenset[str]:
    labels = getattr(router, "labels", None)
    if not labels:
        name = getattr(router, "__name__", repr(router))
        raise GraphConfigError(f"Router {name!r} does not declare its labels (use @routes)")
    return frozenset(labels)


def _checked(router: Callable, source: str) -> Callable:
    labels = router_labels(router)
    name = getattr(router, "__name__", "router")

    def _route(state: Any) -> str:
        label = router(state)
        if label not in labels:
            raise GraphConfigError(
                f"Router {name!r} after {source!r} returned unwired label {label!r}"
            )
        return label

    _route.__name__ = name
    return _route


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Per-workflow retry contract.

    max_retry_count: ceiling compared against retry_count after increment.
    resume_at:       fixed node the retry loop returns to, or
    resume_router:   a @routes router choosing among resume_targets; its
                     labels must be exactly resume_targets plus "error".
    """

    max_retry_count: int
    resume_at: str | None = None
    resume_router: Callable | None = None
    resume_targets: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_retry_count < 1:
            raise GraphConfigError("max_retry_count must be >= 1")
        if (self.resume_at is None) == (self.resume_router is None):
            raise GraphConfigError("RetryPolicy needs exactly one of resume_at / resume_router")


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class WorkflowBuilder:
    """Registration table for one workflow; build() returns a compiled LangGraph graph."""

    def __init__(
        self,
        state_schema: type,
        name: str,
        retry_policy: RetryPolicy | None = None,
        emit_event: Callable | None = None,
    ) -> None:
        self.name = name
        self.retry_policy = retry_policy
        self._graph = StateGraph(state_schema)
        self._emit_event = emit_event
        self._nodes: set[str] = set()
        self._terminals: set[str] = set()
        self._edges: list[tuple[str, str]] = []
        self._conditional: dict[str, dict[str, str]] = {}
        self._entry: str | None = None

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def add_node(self, name: str, fn: Callable) -> WorkflowBuilder:
        if name in self._nodes:
            raise GraphConfigError(f"[{self.name}] duplicate node name {name!r}")
        if name in (START, END):
            raise GraphConfigError(f"[{self.name}] {name!r} is a reserved node name")
        self._graph.add_node(name, guard_node(name, fn, emit_event=self._emit_event))
        self._nodes.add(name)
        return self

    def add_handlers(self, success: Callable, error: Callable, retry: Callable | None = None) -> WorkflowBuilder:
        """Register the terminal handlers (and the retry handler when a policy is set)."""
        self.add_node(SUCCESS_NODE, success)
        self.add_node(ERROR_NODE, error)
        self._terminals.update({SUCCESS_NODE, ERROR_NODE})
        self._edges.append((SUCCESS_NODE, END))
        self._edges.append((ERROR_NODE, END))

        if retry is None:
            if self.retry_policy is not None:
                raise GraphConfigError(f"[{self.name}] retry policy declared without a retry handler")
            return self
        if self.retry_policy is None:
            raise GraphConfigError(f"[{self.name}] retry handler given without a RetryPolicy")

        self.add_node(RETRY_NODE, retry)
        policy = self.retry_policy
        if policy.resume_at is not None:
            resume = _fixed_resume(policy.resume_at, policy.max_retry_count)
            self.add_conditional_edges(
                RETRY_NODE, resume, {"resume": policy.resume_at, "error": ERROR_NODE}
            )
        else:
            mapping = dict(policy.resume_targets)
            mapping["error"] = ERROR_NODE
            self.add_conditional_edges(RETRY_NODE, policy.resume_router, mapping)
        return self

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def set_entry(self, node: str) -> WorkflowBuilder:
        self._require_no_entry()
        self._entry = node
        self._edges.append((START, node))
        return self

    def set_entry_router(self, router: Callable, mapping: dict[str, str]) -> WorkflowBuilder:
        """Entry via a conditional router off START (several possible first nodes)."""
        self._require_no_entry()
        self._entry = START
        self.add_conditional_edges(START, router, mapping)
        return self

    def add_edge(self, source: str, target: str) -> WorkflowBuilder:
        if source in self._conditional:
            raise GraphConfigError(f"[{self.name}] {source!r} already has conditional edges")
        self._edges.append((source, target))
        return self

    def add_conditional_edges(
        self, source: str, router: Callable, mapping: dict[str, str]
    ) -> WorkflowBuilder:
        labels = router_labels(router)
        wired = frozenset(mapping)
        if labels != wired:
            missing = sorted(labels - wired)
            extra = sorted(wired - labels)
            raise GraphConfigError(
                f"[{self.name}] router {getattr(router, '__name__', router)!r} after {source!r}: "
                f"unwired labels {missing}, unreachable mapping keys {extra}"
            )
        if source in self._conditional:
            raise GraphConfigError(f"[{self.name}] {source!r} already has conditional edges")
        if any(src == source for src, _ in self._edges):
            raise GraphConfigError(f"[{self.name}] {source!r} already has a fixed edge")
        self._conditional[source] = dict(mapping)
        self._graph.add_conditional_edges(source, _checked(router, source), dict(mapping))
        return self

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(self, checkpointer: Any = None) -> Any:
        """Validate the registration table and compile it."""
        self._validate()
        for source, target in self._edges:
            self._graph.add_edge(source, target)
        compiled = self._graph.compile(checkpointer=checkpointer)
        logger.info(
            "[%s] compiled: %d nodes, %d fixed edges, %d routers, retry=%s",
            self.name,
            len(self._nodes),
            len(self._edges),
            len(self._conditional),
            self.retry_policy.max_retry_count if self.retry_policy else "none",
        )
        return compiled

    def _validate(self) -> None:
        if self._entry is None:
            raise GraphConfigError(f"[{self.name}] no entry point")
        if not self._terminals:
            raise GraphConfigError(f"[{self.name}] no terminal handlers registered")

        known = self._nodes | {END}
        for source, target in self._edges:
            if source != START and source not in self._nodes:
                raise GraphConfigError(f"[{self.name}] edge from unknown node {source!r}")
            if target not in known:
                raise GraphConfigError(f"[{self.name}] edge to unknown node {target!r}")
        for source, mapping in self._conditional.items():
            if source != START and source not in self._nodes:
                raise GraphConfigError(f"[{self.name}] router on unknown node {source!r}")
            for label, target in mapping.items():
                if target not in known:
                    raise GraphConfigError(
                        f"[{self.name}] label {label!r} after {source!r} targets unknown node {target!r}"
                    )

        has_exit = {src for src, _ in self._edges} | set(self._conditional)
        dangling = sorted(n for n in self._nodes if n not in has_exit)
        if dangling:
            raise GraphConfigError(f"[{self.name}] nodes without outgoing edges: {dangling}")

    def _require_no_entry(self) -> None:
        if self._entry is not None:
            raise GraphConfigError(f"[{self.name}] entry point already set")


def _fixed_resume(target: str, max_retry_count: int) -> Callable:
    @routes("resume", "error")
    def route_retry(state: dict) -> str:
        if (state.get("retry_count") or 0) >= max_retry_count:
            return "error"
        return "resume"

    route_retry.__name__ = f"route_retry_to_{target}"
    return route_retry
