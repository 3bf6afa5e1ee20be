"""Application domain: sub-workflow plus the coordinator bridge.

Graph:

    START → app_understanding → app_design → app_executor → handle_success
                   │                 │              │
                   └──── retry / error ─────────────┘

    handle_retry resumes at app_executor when a previous attempt left
    completed steps behind, otherwise back at app_understanding.

Retry ceiling defaults to 1: one attempt per stage, failures go straight to
handle_error through the retry handler.
"""

from __future__ import annotations

import json
import logging
from typing import Callable

from nflow_agent.agent.builder import (
    ERROR_NODE,
    RETRY_NODE,
    SUCCESS_NODE,
    RetryPolicy,
    WorkflowBuilder,
    routes,
)
from nflow_agent.agent.handlers import make_error_handler, make_retry_handler, make_success_handler
from nflow_agent.agent.routing import can_retry, completed_steps, route_execution, route_stage
from nflow_agent.agent.state import RESET, ApplicationState, initial_state
from nflow_agent.agent.subgraph import SubgraphHandler, build_subgraph_message, current_intent
from nflow_agent.agent.tools import APPLICATION_SPEC_TOOL, APPLICATION_UNDERSTANDING_PROMPT
from nflow_agent.client import describe_failure
from nflow_agent.reasoning import ExtractionError, Message, ReasoningEngine, extract

logger = logging.getLogger("nflow_agent.agent.domains.application")

DOMAIN = "application"

#: classified intent action → operation the sub-graph performs
OPERATIONS: dict[str, str] = {
    "create_application": "create",
    "update_application": "update",
    "delete_application": "delete",
}


def operation_for(intent_action: str | None) -> str:
    try:
        return OPERATIONS[intent_action or ""]
    except KeyError:
        raise ValueError(f"Unsupported application operation: {intent_action}") from None


# ---------------------------------------------------------------------------
# Coordinator bridge
# ---------------------------------------------------------------------------


class ApplicationSubgraphHandler(SubgraphHandler):
    domain = DOMAIN
    results_key = "application_results"
    id_field = "app_id"

    def transform_to_subgraph_state(self, state: dict) -> dict:
        intent = current_intent(state)
        if intent is None:
            raise ValueError("No current intent for application subgraph")
        content = build_subgraph_message(intent, state.get("original_message") or "")
        # Private fields (specs, execution_result, error) start at None.
        return initial_state(
            ApplicationState,
            messages=[Message(role="user", content=content)],
            original_message=state.get("original_message") or "",
            chat_session_id=state.get("chat_session_id") or "",
            intent=dict(intent),
            operation_type=operation_for(intent.get("intent")),
            retry_count=0,
            is_completed=False,
        )

    def result_payload(self, output: dict) -> dict:
        return {
            "operation_type": output.get("operation_type"),
            "application_spec": output.get("application_spec"),
            "enriched_spec": output.get("enriched_spec"),
            "execution_result": output.get("execution_result"),
            "error": output.get("error"),
        }

    def created_entities(self, output: dict) -> list[dict]:
        execution = output.get("execution_result") or {}
        if output.get("operation_type") != "create" or not execution.get("app_id"):
            return []
        entities = [{"kind": "application", "name": execution["app_id"], "id": execution["app_id"]}]
        for step in execution.get("completed_steps") or []:
            if step.get("type") == "create_object":
                entities.append({"kind": "object", "name": step.get("entity_name"), "id": step["entity_id"]})
        return entities


# ---------------------------------------------------------------------------
# Spec validation
# ---------------------------------------------------------------------------


def validate_application_spec(spec: dict) -> list[str]:
    errors: list[str] = []
    name = spec.get("app_name")
    if not isinstance(name, str) or not name.strip():
        errors.append("app_name is required")
    for key in ("objects", "layouts", "flows"):
        value = spec.get(key)
        if value is not None and not isinstance(value, list):
            errors.append(f"{key} must be a list")
    return errors


def _duplicates(names: list) -> list[str]:
    seen: set[str] = set()
    dupes: list[str] = []
    for n in names:
        key = str(n).strip().lower()
        if key in seen and n not in dupes:
            dupes.append(n)
        seen.add(key)
    return dupes


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


def _make_app_understanding_node(engine: ReasoningEngine, temperature: float = 0.0) -> Callable:
    async def app_understanding(state: ApplicationState) -> dict:
        operation = state.get("operation_type") or "create"
        logger.info("[APP_UNDERSTANDING] operation=%s", operation)
        try:
            result = await extract(
                engine,
                APPLICATION_UNDERSTANDING_PROMPT.format(operation=operation),
                list(state.get("messages") or []),
                [APPLICATION_SPEC_TOOL],
                temperature=temperature,
            )
        except ExtractionError as exc:
            logger.warning("[APP_UNDERSTANDING] extraction failed: %s", exc)
            return {"error": str(exc), "current_node": "app_understanding"}

        spec = {
            "app_name": (result.arguments.get("app_name") or "").strip(),
            "description": result.arguments.get("description") or "",
            "objects": result.arguments.get("objects") or [],
            "layouts": result.arguments.get("layouts") or [],
            "flows": result.arguments.get("flows") or [],
            "metadata": result.arguments.get("metadata") or {},
        }
        problems = validate_application_spec({**result.arguments, "app_name": spec["app_name"]})
        if problems:
            # Keep the malformed spec: the router treats artifact + error as a validation failure.
            return {
                "application_spec": spec,
                "error": f"Invalid application specification: {', '.join(problems)}",
                "current_node": "app_understanding",
            }
        return {
            "application_spec": spec,
            "error": RESET,
            "current_node": "app_understanding",
            "messages": [Message(role="assistant", content=f"Understood application {spec['app_name']!r}")],
        }

    return app_understanding


def app_design(state: ApplicationState) -> dict:
    """Turn the extracted spec into API parameters for the executor."""
    spec = state.get("application_spec")
    operation = state.get("operation_type")
    if not spec or not operation:
        return {"error": "Missing required fields: application_spec", "current_node": "app_design"}

    name = spec["app_name"]
    if operation == "delete":
        enriched = {
            **spec,
            "app_id": name,
            "objects": [],
            "layouts": [],
            "flows": [],
            "api_parameters": {"name": name, "names": [name]},
        }
        logger.info("[APP_DESIGN] delete spec for %s", name)
        return {"enriched_spec": enriched, "error": RESET, "current_node": "app_design"}

    problems = []
    for key in ("objects", "layouts", "flows"):
        dupes = _duplicates(spec.get(key) or [])
        if dupes:
            problems.append(f"duplicate {key}: {', '.join(dupes)}")
    if problems:
        return {
            "enriched_spec": {**spec},
            "error": f"Invalid application design: {'; '.join(problems)}",
            "current_node": "app_design",
        }

    metadata = spec.get("metadata") or {}
    enriched = {
        **spec,
        "app_id": name,
        "tag_names": list(metadata.get("tags") or []),
        "profiles": list(metadata.get("profiles") or []),
        "api_parameters": {
            "name": name,
            "displayName": metadata.get("display_name") or name,
            "description": spec.get("description") or "",
            "tagNames": list(metadata.get("tags") or []),
            "profiles": list(metadata.get("profiles") or []),
        },
    }
    logger.info("[APP_DESIGN] %s %s: %d object(s)", operation, name, len(spec.get("objects") or []))
    return {"enriched_spec": enriched, "error": RESET, "current_node": "app_design"}


def plan_application_steps(operation: str, enriched: dict) -> list[dict]:
    """Ordered writes for one application operation."""
    steps = [{
        "type": f"{operation}_application",
        "kind": "application",
        "action": operation,
        "name": enriched["app_id"],
        "payload": dict(enriched.get("api_parameters") or {"name": enriched["app_id"]}),
    }]
    if operation == "create":
        for obj in enriched.get("objects") or []:
            steps.append({
                "type": "create_object",
                "kind": "object",
                "action": "create",
                "name": obj,
                "payload": {
                    "name": obj,
                    "data": {"displayName": obj, "application": enriched["app_id"]},
                },
            })
    return steps


def _make_app_executor_node(client) -> Callable:
    async def app_executor(state: ApplicationState) -> dict:
        enriched = state.get("enriched_spec")
        operation = state.get("operation_type")
        if not enriched or not operation:
            return {"error": "Missing required fields: enriched_spec", "current_node": "app_executor"}

        steps = plan_application_steps(operation, enriched)
        done = completed_steps(state)
        done_indices = {s["step_index"] for s in done}
        completed = list(done)
        errors: list[str] = []

        if done_indices:
            logger.info("[APP_EXECUTOR] resuming: %d of %d step(s) already done", len(done_indices), len(steps))

        for index, step in enumerate(steps):
            if index in done_indices:
                continue
            try:
                response = await client.apply_change(step["kind"], step["action"], step["payload"])
                entity_id = response["resource_id"]
            except Exception as exc:
                logger.warning("[APP_EXECUTOR] step %d (%s %s) failed: %s", index, step["type"], step["name"], exc)
                errors.append(f"{step['type']} {step['name']}: {describe_failure(exc)}")
                if index == 0:
                    # Nothing else can run without the application itself.
                    break
                continue
            completed.append({
                "type": step["type"],
                "step_index": index,
                "entity_id": entity_id,
                "entity_name": step["name"],
            })

        completed.sort(key=lambda s: s["step_index"])
        app_step = next((s for s in completed if s["step_index"] == 0), None)
        if len(completed) == len(steps):
            status = "success"
        elif completed:
            status = "partial"
        else:
            status = "failed"

        result = {
            "status": status,
            "operation_type": operation,
            "app_id": app_step["entity_id"] if app_step else None,
            "errors": errors,
            "created_entities": {
                "objects": [s["entity_id"] for s in completed if s["type"] == "create_object"],
            },
            "completed_steps": completed,
        }
        logger.info("[APP_EXECUTOR] %s %s -> %s", operation, enriched.get("app_id"), status)

        patch: dict = {"execution_result": result, "current_node": "app_executor"}
        if status == "success":
            patch["error"] = RESET
            patch["is_completed"] = True
        else:
            patch["error"] = "; ".join(errors) or f"Application {operation} failed"
        return patch

    return app_executor


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------


def _make_routers(max_retry: int) -> dict[str, Callable]:
    @routes("design", "retry", "error")
    def route_after_understanding(state: ApplicationState) -> str:
        return route_stage(state, "application_spec", "design", max_retry)

    @routes("execute", "retry", "error")
    def route_after_design(state: ApplicationState) -> str:
        return route_stage(state, "enriched_spec", "execute", max_retry)

    @routes("success", "retry", "error")
    def route_after_execution(state: ApplicationState) -> str:
        return route_execution(state, max_retry)

    @routes("understanding", "executor", "error")
    def route_retry(state: ApplicationState) -> str:
        if not can_retry(state, max_retry):
            return "error"
        return "executor" if completed_steps(state) else "understanding"

    return {
        "understanding": route_after_understanding,
        "design": route_after_design,
        "execution": route_after_execution,
        "retry": route_retry,
    }


# ---------------------------------------------------------------------------
# Graph factory
# ---------------------------------------------------------------------------


def build_application_graph(
    engine: ReasoningEngine,
    client,
    max_retry: int = 1,
    emit_event: Callable | None = None,
    temperature: float = 0.0,
):
    """Compile the application sub-workflow.

    Args:
        engine:    Structured-extraction engine for app_understanding.
        client:    Anything with ``async apply_change(kind, action, payload)``.
        max_retry: Retry ceiling for this workflow.
    """
    r = _make_routers(max_retry)
    policy = RetryPolicy(
        max_retry_count=max_retry,
        resume_router=r["retry"],
        resume_targets={"understanding": "app_understanding", "executor": "app_executor"},
    )
    builder = WorkflowBuilder(ApplicationState, "application", retry_policy=policy, emit_event=emit_event)

    builder.add_node("app_understanding", _make_app_understanding_node(engine, temperature))
    builder.add_node("app_design", app_design)
    builder.add_node("app_executor", _make_app_executor_node(client))
    builder.add_handlers(
        success=make_success_handler("application", _success_message),
        error=make_error_handler("application"),
        retry=make_retry_handler("application", max_retry),
    )

    builder.set_entry("app_understanding")
    builder.add_conditional_edges(
        "app_understanding", r["understanding"],
        {"design": "app_design", "retry": RETRY_NODE, "error": ERROR_NODE},
    )
    builder.add_conditional_edges(
        "app_design", r["design"],
        {"execute": "app_executor", "retry": RETRY_NODE, "error": ERROR_NODE},
    )
    builder.add_conditional_edges(
        "app_executor", r["execution"],
        {"success": SUCCESS_NODE, "retry": RETRY_NODE, "error": ERROR_NODE},
    )
    # Never checkpointed: every invocation starts from the state the handler builds.
    return builder.build(checkpointer=False)


def _success_message(state: dict) -> str:
    result = state.get("execution_result") or {}
    return (
        f"Application {result.get('operation_type')} completed: {result.get('app_id')} "
        f"({json.dumps(result.get('created_entities') or {})})"
    )
