"""Coordinator workflow: classify a request into intents and run them in order.

Graph:

    START → state_reset → filter_request ─chat──────────────────────────► handle_success
                               │platform
                               ▼
                         classify_intent ─retry─► handle_retry ─resume─► classify_intent
                               │validate                │error
                               ▼                        ▼
                     validate_classification ─error─► handle_error
                               │next_intent
                               ▼
                ┌──────► process_next_intent ─summarize─► summarize_execution ─► handle_success
                │              │<domain>_domain
                │              ▼
                └──────── <domain>_subgraph   (one node per registered domain)

Each ``<domain>_subgraph`` node is a SubgraphWrapper: it runs a complete,
independently-compiled domain workflow for the current intent and always
advances the sequencer (see agent.subgraph for the failure policy).
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable

from nflow_agent.agent.builder import (
    ERROR_NODE,
    RETRY_NODE,
    SUCCESS_NODE,
    RetryPolicy,
    WorkflowBuilder,
    routes,
)
from nflow_agent.agent.domains.application import ApplicationSubgraphHandler, build_application_graph
from nflow_agent.agent.domains.object import ObjectSubgraphHandler, build_object_graph
from nflow_agent.agent.handlers import make_error_handler, make_retry_handler, make_success_handler
from nflow_agent.agent.registry import DomainDispatcher
from nflow_agent.agent.routing import route_stage
from nflow_agent.agent.sequencer import (
    make_process_next_intent_node,
    make_route_after_next_intent,
    validate_classification,
)
from nflow_agent.agent.settings import AgentSettings
from nflow_agent.agent.state import RESET, CoordinatorState
from nflow_agent.agent.subgraph import SubgraphWrapper
from nflow_agent.agent.tools import (
    CHAT_FILTER_PROMPT,
    CHAT_FILTER_TOOL,
    INTENT_CLASSIFIER_PROMPT,
    INTENT_CLASSIFIER_TOOL,
    vocabulary_block,
)
from nflow_agent.persistence.checkpointer import make_memory_checkpointer
from nflow_agent.reasoning import ExtractionError, Message, ReasoningEngine, extract

logger = logging.getLogger("nflow_agent.agent.coordinator")

DEFAULT_CHAT_REPLY = "Hello! Tell me which applications, objects or fields you would like to manage."


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


def state_reset(state: CoordinatorState) -> dict:
    """Clear per-request fields; messages and created_entities are session-scoped and kept."""
    logger.info("[STATE_RESET] session=%s", state.get("chat_session_id"))
    return {
        "classified_intent": RESET,
        "error": RESET,
        "chat_reply": RESET,
        "summary": RESET,
        "current_intent_index": RESET,
        "retry_count": RESET,
        "is_completed": RESET,
        "processed_intents": [RESET],
        "errors": [RESET],
        "application_results": [RESET],
        "object_results": [RESET],
        "current_node": "state_reset",
    }


def _make_filter_request_node(engine: ReasoningEngine, temperature: float = 0.0) -> Callable:
    async def filter_request(state: CoordinatorState) -> dict:
        message = state.get("original_message") or ""
        try:
            result = await extract(
                engine, CHAT_FILTER_PROMPT, [Message(role="user", content=message)],
                [CHAT_FILTER_TOOL], temperature,
            )
        except ExtractionError as exc:
            # Fail open: a platform request must never be swallowed as chat.
            logger.warning("[FILTER_REQUEST] chat filter failed, treating as platform request: %s", exc)
            return {"current_node": "filter_request"}

        if result.arguments.get("is_platform_operation", True):
            logger.info("[FILTER_REQUEST] platform operation")
            return {"current_node": "filter_request"}

        reply = (result.arguments.get("chat_response") or "").strip() or DEFAULT_CHAT_REPLY
        logger.info("[FILTER_REQUEST] casual chat, answering directly")
        return {"chat_reply": reply, "current_node": "filter_request"}

    return filter_request


def _execution_context(created_entities: list[dict]) -> str:
    if not created_entities:
        return ""
    lines = ["", "Execution context (already created in this session):"]
    for e in created_entities:
        lines.append(f"- {e.get('kind')}: {e.get('name')} (id: {e.get('id')})")
    return "\n".join(lines)


def _make_classify_intent_node(engine: ReasoningEngine, temperature: float = 0.0) -> Callable:
    async def classify_intent(state: CoordinatorState) -> dict:
        system = INTENT_CLASSIFIER_PROMPT.format(vocabulary=vocabulary_block())
        system += _execution_context(state.get("created_entities") or [])
        logger.info("[CLASSIFY_INTENT] attempt=%d", (state.get("retry_count") or 0) + 1)
        try:
            result = await extract(
                engine, system, [Message(role="user", content=state.get("original_message") or "")],
                [INTENT_CLASSIFIER_TOOL], temperature,
            )
        except ExtractionError as exc:
            logger.warning("[CLASSIFY_INTENT] extraction failed: %s", exc)
            return {"error": f"Intent classification failed: {exc}", "current_node": "classify_intent"}

        intents = [
            {**intent, "id": str(uuid.uuid4())}
            for intent in result.arguments.get("intents") or []
            if isinstance(intent, dict)
        ]
        classified = {"intents": intents, "dependencies": list(result.arguments.get("dependencies") or [])}
        logger.info(
            "[CLASSIFY_INTENT] %d intent(s), %d dependenc(ies)",
            len(intents), len(classified["dependencies"]),
        )
        return {
            "classified_intent": classified,
            "current_intent_index": 0,
            "error": RESET,
            "current_node": "classify_intent",
            "messages": [Message(
                role="assistant",
                content="Classified: " + ", ".join(f"{i.get('domain')}/{i.get('intent')}" for i in intents),
            )],
        }

    return classify_intent


def validate_classification_node(state: CoordinatorState) -> dict:
    errors = validate_classification(state.get("classified_intent"))
    if errors:
        logger.warning("[VALIDATE_CLASSIFICATION] %s", "; ".join(errors))
        return {
            "error": f"Classification validation failed: {'; '.join(errors)}",
            "current_node": "validate_classification",
        }
    return {"error": RESET, "current_node": "validate_classification"}


def summarize_execution(state: CoordinatorState) -> dict:
    """Write a human-readable wrap-up of every intent in this request."""
    intents = (state.get("classified_intent") or {}).get("intents") or []
    results = {
        r["intent_index"]: r
        for r in (state.get("application_results") or []) + (state.get("object_results") or [])
    }
    counts = {"success": 0, "partial": 0, "failed": 0, "skipped": 0}
    lines = []
    for index, intent in enumerate(intents):
        result = results.get(index)
        status = result["status"] if result else "skipped"
        counts[status] = counts.get(status, 0) + 1
        target = intent.get("target")
        if isinstance(target, list):
            target = ", ".join(target)
        lines.append(f"{index + 1}. {intent.get('intent')} {target or ''}: {status}".rstrip())

    for err in state.get("errors") or []:
        lines.append(f"   error ({err.get('domain')}, intent {err.get('intent_index')}): {err.get('error_message')}")

    header = (
        f"Processed {len(intents)} intent(s): {counts['success']} succeeded, "
        f"{counts['partial']} partial, {counts['failed']} failed, {counts['skipped']} skipped"
    )
    summary = "\n".join([header, *lines])
    logger.info("[SUMMARIZE_EXECUTION] %s", header)
    return {"summary": summary, "current_node": "summarize_execution"}


def _success_message(state: dict) -> str:
    return state.get("chat_reply") or state.get("summary") or "Request completed"


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------


@routes("chat", "platform")
def route_after_filter(state: CoordinatorState) -> str:
    return "chat" if state.get("chat_reply") else "platform"


@routes("next_intent", "error")
def route_after_validation(state: CoordinatorState) -> str:
    return "error" if state.get("error") else "next_intent"


def _make_route_after_classify(max_retry: int) -> Callable:
    @routes("validate", "retry", "error")
    def route_after_classify(state: CoordinatorState) -> str:
        return route_stage(state, "classified_intent", "validate", max_retry)

    return route_after_classify


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def create_dispatcher(
    engine: ReasoningEngine,
    client,
    settings: AgentSettings | None = None,
    emit_event: Callable | None = None,
    temperature: float = 0.0,
) -> DomainDispatcher:
    """Compile every domain sub-graph and register its wrapper."""
    settings = settings or AgentSettings()
    dispatcher = DomainDispatcher()
    dispatcher.register(SubgraphWrapper(
        ApplicationSubgraphHandler(),
        build_application_graph(engine, client, settings.app_max_retry, emit_event, temperature),
        recursion_limit=settings.recursion_limit,
    ))
    dispatcher.register(SubgraphWrapper(
        ObjectSubgraphHandler(),
        build_object_graph(engine, client, settings.object_max_retry, emit_event, temperature),
        recursion_limit=settings.recursion_limit,
    ))
    return dispatcher


def build_coordinator_graph(
    engine: ReasoningEngine,
    dispatcher: DomainDispatcher,
    checkpointer: Any = None,
    max_retry: int = 3,
    emit_event: Callable | None = None,
    temperature: float = 0.0,
):
    """Compile the coordinator workflow.

    Args:
        engine:       Structured-extraction engine (chat filter + classifier).
        dispatcher:   Registered domain sub-graphs.
        checkpointer: LangGraph checkpointer; defaults to an in-process MemorySaver.
        max_retry:    Coordinator retry ceiling (classification retries).
    """
    if checkpointer is None:
        logger.info("No checkpointer supplied; using in-memory MemorySaver (sessions are process-local)")
        checkpointer = make_memory_checkpointer()

    policy = RetryPolicy(max_retry_count=max_retry, resume_at="classify_intent")
    builder = WorkflowBuilder(CoordinatorState, "coordinator", retry_policy=policy, emit_event=emit_event)

    builder.add_node("state_reset", state_reset)
    builder.add_node("filter_request", _make_filter_request_node(engine, temperature))
    builder.add_node("classify_intent", _make_classify_intent_node(engine, temperature))
    builder.add_node("validate_classification", validate_classification_node)
    builder.add_node("process_next_intent", make_process_next_intent_node(dispatcher))
    for entry in dispatcher.entries():
        builder.add_node(entry.node_name, entry.wrapper)
    builder.add_node("summarize_execution", summarize_execution)
    builder.add_handlers(
        success=make_success_handler("coordinator", _success_message),
        error=make_error_handler("coordinator"),
        retry=make_retry_handler("coordinator", max_retry),
    )

    builder.set_entry("state_reset")
    builder.add_edge("state_reset", "filter_request")
    builder.add_conditional_edges(
        "filter_request", route_after_filter,
        {"chat": SUCCESS_NODE, "platform": "classify_intent"},
    )
    builder.add_conditional_edges(
        "classify_intent", _make_route_after_classify(max_retry),
        {"validate": "validate_classification", "retry": RETRY_NODE, "error": ERROR_NODE},
    )
    builder.add_conditional_edges(
        "validate_classification", route_after_validation,
        {"next_intent": "process_next_intent", "error": ERROR_NODE},
    )

    next_intent_targets = {
        "next_intent": "process_next_intent",
        "summarize": "summarize_execution",
        "error": ERROR_NODE,
    }
    for entry in dispatcher.entries():
        next_intent_targets[entry.label] = entry.node_name
        builder.add_edge(entry.node_name, "process_next_intent")
    builder.add_conditional_edges(
        "process_next_intent", make_route_after_next_intent(dispatcher), next_intent_targets,
    )
    builder.add_edge("summarize_execution", SUCCESS_NODE)

    return builder.build(checkpointer=checkpointer)
