"""Intent sequencing: which classified intent runs next, and whether we are done.

State machine over (intents, current_intent_index, processed_intents):

  done         every index is processed                → summarize
  skip         index is past the end or already processed, but some index is
               still unprocessed                       → move to it
  redirect     intent has an unprocessed dependency    → move to the dependency
  dispatch     intent's domain has a sub-graph         → route to that domain
  passthrough  no sub-graph for the domain             → mark processed, advance

Every step either advances, redirects to a different index (dependencies are
acyclic, validated at classification time) or ends, so the loop terminates
and every intent is processed exactly once.

decide() is the single source of truth; the process_next_intent node applies
its index moves and the router reads it to pick the edge label.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable

from nflow_agent.agent.builder import routes
from nflow_agent.agent.registry import DomainDispatcher
from nflow_agent.agent.tools import is_valid_combination
from nflow_agent.reasoning import Message

logger = logging.getLogger("nflow_agent.agent.sequencer")

NO_INTENTS = "No intents to process"


# ---------------------------------------------------------------------------
# Dependency helpers
# ---------------------------------------------------------------------------


def _edges(dependencies: Iterable[dict]) -> list[tuple[int, int]]:
    return [
        (int(d["dependent_intent_index"]), int(d["depends_on_intent_index"]))
        for d in dependencies or []
    ]


def has_circular_dependency(
    dependencies: list[dict], start: int, current: int, visited: set[int]
) -> bool:
    """Depth-first walk along depends-on edges from *current*; True if it reaches *start*."""
    if current == start:
        return True
    if current in visited:
        return False
    visited.add(current)
    for dependent, depends_on in _edges(dependencies):
        if dependent == current and has_circular_dependency(dependencies, start, depends_on, visited):
            return True
    return False


def find_cycle(dependencies: list[dict]) -> tuple[int, int] | None:
    """Return the first (dependent, depends_on) edge that closes a cycle, else None."""
    for dependent, depends_on in _edges(dependencies):
        if has_circular_dependency(dependencies, dependent, depends_on, set()):
            return dependent, depends_on
    return None


def unprocessed_dependencies(classified: dict, index: int, processed: Iterable[int]) -> list[int]:
    done = set(processed)
    return [
        depends_on
        for dependent, depends_on in _edges(classified.get("dependencies") or [])
        if dependent == index and depends_on not in done
    ]


def validate_classification(classified: dict | None) -> list[str]:
    """Structural checks on a classification result. Empty list = valid."""
    if not classified:
        return ["No classified intent to validate"]
    intents = classified.get("intents") or []
    if not intents:
        return ["Empty intents array in classified intent"]

    errors: list[str] = []
    for intent in intents:
        domain, action = intent.get("domain"), intent.get("intent")
        if not is_valid_combination(domain or "", action or ""):
            errors.append(f"Invalid domain-intent combination: {domain}-{action}")

    dependencies = classified.get("dependencies") or []
    try:
        edges = _edges(dependencies)
    except (KeyError, TypeError, ValueError):
        return errors + ["Malformed dependency entry"]

    for dependent, depends_on in edges:
        for idx in (dependent, depends_on):
            if not 0 <= idx < len(intents):
                errors.append(f"Invalid dependency index: {idx}")
        if dependent == depends_on:
            errors.append(f"Intent cannot depend on itself: {dependent}")
    if errors:
        return errors

    cycle = find_cycle(dependencies)
    if cycle:
        errors.append(f"Circular dependency detected between intents {cycle[0]} and {cycle[1]}")
    return errors


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Decision:
    action: str  # "error" | "done" | "skip" | "redirect" | "dispatch" | "passthrough"
    index: int
    domain: str | None = None


def decide(state: dict, is_supported: Callable[[str], bool]) -> Decision:
    classified = state.get("classified_intent") or {}
    intents = classified.get("intents") or []
    index = state.get("current_intent_index") or 0
    processed = set(state.get("processed_intents") or [])

    if not intents:
        return Decision("error", index)

    remaining = [i for i in range(len(intents)) if i not in processed]
    if not remaining:
        return Decision("done", index)

    if index >= len(intents) or index in processed:
        later = [i for i in remaining if i > index]
        return Decision("skip", later[0] if later else remaining[0])

    deps = unprocessed_dependencies(classified, index, processed)
    if deps:
        return Decision("redirect", deps[0])

    domain = intents[index].get("domain")
    if domain and is_supported(domain):
        return Decision("dispatch", index, domain)
    return Decision("passthrough", index, domain)


# ---------------------------------------------------------------------------
# Node + router factories
# ---------------------------------------------------------------------------


def make_process_next_intent_node(dispatcher: DomainDispatcher) -> Callable:
    def process_next_intent(state: dict) -> dict:
        decision = decide(state, dispatcher.is_domain_supported)
        patch: dict = {"current_node": "process_next_intent"}

        match decision.action:
            case "error":
                logger.warning("[PROCESS_NEXT_INTENT] %s", NO_INTENTS)
                patch["error"] = NO_INTENTS
            case "done":
                logger.info("[PROCESS_NEXT_INTENT] all intents processed")
            case "skip":
                patch["current_intent_index"] = decision.index
            case "redirect":
                logger.info(
                    "[PROCESS_NEXT_INTENT] intent %s waits on %d; processing dependency first",
                    state.get("current_intent_index"), decision.index,
                )
                patch["current_intent_index"] = decision.index
            case "passthrough":
                logger.info(
                    "[PROCESS_NEXT_INTENT] no sub-graph for domain %r; marking intent %d processed",
                    decision.domain, decision.index,
                )
                patch["processed_intents"] = [decision.index]
                patch["current_intent_index"] = decision.index + 1
                patch["messages"] = [Message(
                    role="assistant",
                    content=f"Skipped intent {decision.index}: domain {decision.domain!r} is not supported yet",
                )]
            case _:
                logger.info(
                    "[PROCESS_NEXT_INTENT] dispatching intent %d to %s", decision.index, decision.domain
                )
        return patch

    return process_next_intent


def make_route_after_next_intent(dispatcher: DomainDispatcher) -> Callable:
    labels = ("next_intent", "summarize", "error", *dispatcher.labels())

    @routes(*labels)
    def route_after_next_intent(state: dict) -> str:
        if state.get("error"):
            return "error"
        decision = decide(state, dispatcher.is_domain_supported)
        match decision.action:
            case "error":
                return "error"
            case "done":
                return "summarize"
            case "dispatch":
                return dispatcher.label_for(decision.domain)
            case _:
                return "next_intent"

    return route_after_next_intent
