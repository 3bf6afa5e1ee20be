"""Sub-graph composition: run a domain workflow as a single coordinator node.

A SubgraphHandler knows how to translate between the coordinator state and one
domain's state shape.  Every field that crosses the boundary is listed
explicitly in transform_to_subgraph_state / transform_to_coordinator_state.

SubgraphWrapper drives the bridge for one intent:

    1. validate_context(outer)            → ValidationResult
    2. transform_to_subgraph_state(outer) → inner initial state (fresh)
    3. inner_graph.ainvoke(...)           → inner final state
    4. validate_subgraph_results(inner)   → ValidationResult
    5. transform_to_coordinator_state(inner, outer) → outer patch

Failure containment: any failed validation or exception in steps 1-5 becomes
one IntentError record, the current intent is marked processed and the index
advances.  The coordinator therefore always makes forward progress; a broken
intent is reported, never re-run.
"""

from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from nflow_agent.agent.state import IntentError
from nflow_agent.reasoning import Message

logger = logging.getLogger("nflow_agent.agent.subgraph")

VALID_STATUSES = ("success", "partial", "failed")


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def current_intent(state: dict) -> dict | None:
    intents = (state.get("classified_intent") or {}).get("intents") or []
    index = state.get("current_intent_index")
    if isinstance(index, int) and 0 <= index < len(intents):
        return intents[index]
    return None


def build_subgraph_message(intent: dict, original_message: str) -> str:
    """Focused restatement of the request for one intent."""
    target = intent.get("target")
    target_info = ""
    if target:
        target_info = f" Target: {', '.join(target) if isinstance(target, list) else target}"
    details = intent.get("details")
    details_info = f" Details: {json.dumps(details, default=str)}" if details else ""
    return f"{intent.get('intent')} request: {original_message}{target_info}{details_info}"


# ---------------------------------------------------------------------------
# Handler contract
# ---------------------------------------------------------------------------


class SubgraphHandler(ABC):
    """State translation for one domain sub-graph.

    Subclasses set ``domain``, ``results_key`` (the coordinator accumulator
    for per-intent results) and ``id_field`` (the execution-result key that
    must be present for success/partial), and implement the two
    domain-specific transforms.
    """

    domain: str
    results_key: str
    id_field: str

    # -- 1 ------------------------------------------------------------------

    def validate_context(self, state: dict) -> ValidationResult:
        result = ValidationResult()
        intents = (state.get("classified_intent") or {}).get("intents") or []
        index = state.get("current_intent_index")

        if not intents:
            result.errors.append("No intents to process")
        if not isinstance(index, int) or isinstance(index, bool) or index < 0:
            result.errors.append("Valid current intent index is required")
        elif intents and index >= len(intents):
            result.errors.append("Invalid intent index")

        intent = current_intent(state)
        if intent and intent.get("domain") != self.domain:
            result.errors.append(f"Invalid domain for {self.domain} subgraph: {intent.get('domain')}")
        if not (state.get("original_message") or "").strip():
            result.errors.append("Empty or invalid original message")
        return result

    # -- 2 ------------------------------------------------------------------

    @abstractmethod
    def transform_to_subgraph_state(self, state: dict) -> dict:
        """Build the inner workflow's initial state for the current intent."""

    # -- 4 ------------------------------------------------------------------

    def validate_subgraph_results(self, output: dict) -> ValidationResult:
        result = ValidationResult()
        execution = output.get("execution_result")
        if not execution:
            result.errors.append(f"No execution result from {self.domain} subgraph")
            return result
        status = execution.get("status")
        if status not in VALID_STATUSES:
            result.errors.append(f"Invalid execution status: {status}")
        elif status in ("success", "partial") and not execution.get(self.id_field):
            result.errors.append(f"Missing {self.id_field} for {status} execution")
        return result

    # -- 5 ------------------------------------------------------------------

    @abstractmethod
    def result_payload(self, output: dict) -> dict:
        """Inner artifacts to keep in the coordinator's per-intent result."""

    def created_entities(self, output: dict) -> list[dict]:
        """Entities to add to the session-scoped created_entities list."""
        return []

    def transform_to_coordinator_state(self, output: dict, state: dict) -> dict:
        index = state.get("current_intent_index") or 0
        intent = current_intent(state) or {}
        execution = output.get("execution_result") or {}
        status = execution.get("status") or "failed"
        failed = status == "failed" or (bool(output.get("error")) and status != "partial")
        if failed:
            status = "failed"

        patch: dict[str, Any] = {
            "processed_intents": [index],
            "current_intent_index": index + 1,
            "current_node": f"{self.domain}_subgraph",
            self.results_key: [{
                "intent_id": intent.get("id") or f"intent_{index}",
                "intent_index": index,
                "domain": self.domain,
                "intent": intent.get("intent"),
                "status": status,
                "timestamp": _now(),
                "result": self.result_payload(output),
            }],
            "messages": [Message(
                role="assistant",
                content=f"{self.domain} intent {index} ({intent.get('intent')}) finished: {status}",
            )],
        }
        if failed:
            patch["errors"] = [self._intent_error(
                state, output.get("error") or f"{self.domain.capitalize()} execution failed"
            )]
        entities = self.created_entities(output) if status != "failed" else []
        if entities:
            patch["created_entities"] = entities
        return patch

    # -- containment ------------------------------------------------------

    def failure_patch(self, state: dict, message: str) -> dict:
        """Outer patch for a contained failure: record it, mark processed, advance."""
        index = state.get("current_intent_index")
        index = index if isinstance(index, int) and not isinstance(index, bool) and index >= 0 else 0
        intent = current_intent(state) or {}
        return {
            "errors": [self._intent_error(state, message)],
            "processed_intents": [index],
            "current_intent_index": index + 1,
            "current_node": f"{self.domain}_subgraph",
            self.results_key: [{
                "intent_id": intent.get("id") or f"intent_{index}",
                "intent_index": index,
                "domain": self.domain,
                "intent": intent.get("intent"),
                "status": "failed",
                "timestamp": _now(),
                "result": {"error": message},
            }],
            "messages": [Message(role="assistant", content=message)],
        }

    def _intent_error(self, state: dict, message: str) -> IntentError:
        intent = current_intent(state)
        intent_id = (intent or {}).get("id") or str(uuid.uuid4())
        previous = [e for e in state.get("errors") or [] if e.get("intent_id") == intent_id]
        index = state.get("current_intent_index")
        return IntentError(
            intent_id=intent_id,
            intent_index=index if isinstance(index, int) else None,
            domain=self.domain,
            error_message=message,
            timestamp=_now(),
            retry_count=len(previous),
        )


# ---------------------------------------------------------------------------
# Wrapper
# ---------------------------------------------------------------------------


class SubgraphWrapper:
    """Adapts a compiled domain workflow into a coordinator node."""

    def __init__(self, handler: SubgraphHandler, graph: Any, recursion_limit: int = 50) -> None:
        self.handler = handler
        self.graph = graph
        self.recursion_limit = recursion_limit

    @property
    def domain(self) -> str:
        return self.handler.domain

    async def __call__(self, state: dict) -> dict:
        domain = self.domain
        tag = f"[{domain.upper()}_SUBGRAPH]"
        try:
            check = self.handler.validate_context(state)
            if not check.is_valid:
                message = f"{domain} preparation failed: {', '.join(check.errors)}"
                logger.warning("%s %s", tag, message)
                return self.handler.failure_patch(state, message)

            inner_input = self.handler.transform_to_subgraph_state(state)
            logger.info("%s invoking sub-graph for intent %s", tag, state.get("current_intent_index"))
            output = await self.graph.ainvoke(
                inner_input, config={"recursion_limit": self.recursion_limit}
            )

            check = self.handler.validate_subgraph_results(output)
            if not check.is_valid:
                inner_error = output.get("error")
                detail = ", ".join(check.errors)
                if inner_error:
                    detail = f"{detail} ({inner_error})"
                message = f"{domain} execution validation failed: {detail}"
                logger.warning("%s %s", tag, message)
                return self.handler.failure_patch(state, message)

            return self.handler.transform_to_coordinator_state(output, state)
        except Exception as exc:
            logger.exception("%s sub-graph execution failed", tag)
            return self.handler.failure_patch(state, f"{domain} subgraph execution failed: {exc}")
