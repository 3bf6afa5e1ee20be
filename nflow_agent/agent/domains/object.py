"""Object domain: sub-workflow plus the coordinator bridge.

Graph:

                 ┌─ object_understanding ─┐
    START ──────►├─ schema_understanding ─┼─► db_design ─► type_mapper ─► object_executor ─► handle_success
     (by intent) ├─ field_understanding ──┘                                  ▲
                 └─ delete_object ───────────────────────────────────────────┘

    Any stage may route to handle_retry or handle_error.  handle_retry
    resumes at object_executor when completed steps exist (partial writes),
    otherwise at the intent's entry node.

Execution is a step plan (object step, then one step per field).  Steps
already listed in execution_result.completed_steps are skipped on the next
attempt, so a partially-applied object is finished without repeating writes.
"""

from __future__ import annotations

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
from nflow_agent.agent.state import RESET, ObjectState, initial_state
from nflow_agent.agent.subgraph import SubgraphHandler, build_subgraph_message, current_intent
from nflow_agent.agent.tools import (
    FIELD_SPEC_TOOL,
    FIELD_UNDERSTANDING_PROMPT,
    OBJECT_SPEC_TOOL,
    OBJECT_UNDERSTANDING_PROMPT,
    PLATFORM_FIELD_TYPES,
    SCHEMA_DESIGN_TOOL,
    SCHEMA_UNDERSTANDING_PROMPT,
)
from nflow_agent.client import describe_failure
from nflow_agent.reasoning import ExtractionError, Message, ReasoningEngine, extract

logger = logging.getLogger("nflow_agent.agent.domains.object")

DOMAIN = "object"

#: intent action → entry node label
ENTRY_ROUTES: dict[str, str] = {
    "create_object": "object_understanding",
    "update_object_metadata": "object_understanding",
    "design_data_schema": "schema_understanding",
    "manipulate_object_fields": "field_understanding",
    "delete_object": "execute",
}

#: Fields the platform adds to every object; never created by hand.
AUTO_GENERATED_FIELDS = frozenset({"guid", "currencycode", "createdat", "updatedat", "createdby", "managedby"})

#: Loose type hint (lower-cased) → platform field type
TYPE_HINTS: dict[str, str] = {
    "text": "text", "string": "text", "str": "text", "name": "text", "short text": "text",
    "longtext": "longText", "long text": "longText", "textarea": "longText", "rich text": "longText",
    "number": "numeric", "numeric": "numeric", "integer": "numeric", "int": "numeric",
    "float": "numeric", "decimal": "numeric",
    "boolean": "boolean", "bool": "boolean", "checkbox": "boolean",
    "datetime": "dateTime", "timestamp": "dateTime", "date-time": "dateTime",
    "date": "date",
    "picklist": "pickList", "select": "pickList", "enum": "pickList", "dropdown": "pickList",
    "relation": "relation", "reference": "relation", "lookup": "relation", "foreign key": "relation",
    "json": "json", "object": "json",
    "email": "email",
    "phone": "phone", "telephone": "phone",
    "url": "url", "link": "url",
    "currency": "currency", "money": "currency",
}


def _target_name(intent: dict | None) -> str | None:
    target = (intent or {}).get("target")
    if isinstance(target, list):
        return target[0] if target else None
    return target or None


# ---------------------------------------------------------------------------
# Coordinator bridge
# ---------------------------------------------------------------------------


class ObjectSubgraphHandler(SubgraphHandler):
    domain = DOMAIN
    results_key = "object_results"
    id_field = "object_id"

    def transform_to_subgraph_state(self, state: dict) -> dict:
        intent = current_intent(state)
        if intent is None:
            raise ValueError("No current intent for object subgraph")
        content = build_subgraph_message(intent, state.get("original_message") or "")
        # Private fields (specs, design, mapping, execution_result) start at None.
        return initial_state(
            ObjectState,
            messages=[Message(role="user", content=content)],
            original_message=state.get("original_message") or "",
            chat_session_id=state.get("chat_session_id") or "",
            intent=dict(intent),
            retry_count=0,
            is_completed=False,
        )

    def result_payload(self, output: dict) -> dict:
        return {
            "object_spec": output.get("object_spec"),
            "field_spec": output.get("field_spec"),
            "type_mapping_result": output.get("type_mapping_result"),
            "execution_result": output.get("execution_result"),
            "error": output.get("error"),
        }

    def created_entities(self, output: dict) -> list[dict]:
        execution = output.get("execution_result") or {}
        return [
            {"kind": "object", "name": step.get("entity_name"), "id": step["entity_id"]}
            for step in execution.get("completed_steps") or []
            if step.get("type") == "create_object"
        ]


# ---------------------------------------------------------------------------
# Understanding nodes
# ---------------------------------------------------------------------------


def _normalize_fields(raw) -> list[dict]:
    fields = []
    for f in raw or []:
        if not isinstance(f, dict):
            continue
        item = dict(f)
        item["name"] = (item.get("name") or "").strip()
        fields.append(item)
    return fields


def _make_object_understanding_node(
    engine: ReasoningEngine, node_name: str, temperature: float = 0.0
) -> Callable:
    """object_understanding / schema_understanding: both produce object_spec."""
    schema = node_name == "schema_understanding"
    tool = SCHEMA_DESIGN_TOOL if schema else OBJECT_SPEC_TOOL
    tag = f"[{node_name.upper()}]"

    async def understand(state: ObjectState) -> dict:
        intent = state.get("intent") or {}
        operation = "update" if intent.get("intent") == "update_object_metadata" else "create"
        system = SCHEMA_UNDERSTANDING_PROMPT if schema else OBJECT_UNDERSTANDING_PROMPT.format(operation=operation)
        logger.info("%s intent=%s", tag, intent.get("intent"))
        try:
            result = await extract(engine, system, list(state.get("messages") or []), [tool], temperature)
        except ExtractionError as exc:
            logger.warning("%s extraction failed: %s", tag, exc)
            return {"error": str(exc), "current_node": node_name}

        args = result.arguments
        spec = {
            "object_name": (args.get("object_name") or _target_name(intent) or "").strip(),
            "display_name": args.get("display_name") or "",
            "description": args.get("description") or "",
            "fields": _normalize_fields(args.get("fields")),
            "metadata": args.get("metadata") or {},
        }
        if not spec["object_name"]:
            return {
                "object_spec": spec,
                "error": "Invalid object specification: object_name is required",
                "current_node": node_name,
            }
        return {
            "object_spec": spec,
            "error": RESET,
            "current_node": node_name,
            "messages": [Message(
                role="assistant",
                content=f"Understood object {spec['object_name']!r} with {len(spec['fields'])} field(s)",
            )],
        }

    understand.__name__ = node_name
    return understand


def _make_field_understanding_node(engine: ReasoningEngine, temperature: float = 0.0) -> Callable:
    async def field_understanding(state: ObjectState) -> dict:
        intent = state.get("intent") or {}
        logger.info("[FIELD_UNDERSTANDING] target=%s", intent.get("target"))
        try:
            result = await extract(
                engine, FIELD_UNDERSTANDING_PROMPT, list(state.get("messages") or []),
                [FIELD_SPEC_TOOL], temperature,
            )
        except ExtractionError as exc:
            logger.warning("[FIELD_UNDERSTANDING] extraction failed: %s", exc)
            return {"error": str(exc), "current_node": "field_understanding"}

        spec = {
            "object_name": (result.arguments.get("object_name") or _target_name(intent) or "").strip(),
            "fields": _normalize_fields(result.arguments.get("fields")),
        }
        problems = []
        if not spec["object_name"]:
            problems.append("object_name is required")
        if not spec["fields"]:
            problems.append("at least one field is required")
        if problems:
            return {
                "field_spec": spec,
                "error": f"Invalid field specification: {', '.join(problems)}",
                "current_node": "field_understanding",
            }
        return {
            "field_spec": spec,
            "error": RESET,
            "current_node": "field_understanding",
            "messages": [Message(
                role="assistant",
                content=f"Understood {len(spec['fields'])} field change(s) on {spec['object_name']!r}",
            )],
        }

    return field_understanding


# ---------------------------------------------------------------------------
# Planning nodes
# ---------------------------------------------------------------------------


def _spec_fields(state: dict) -> tuple[str | None, list[dict]]:
    spec = state.get("field_spec") or state.get("object_spec") or {}
    return spec.get("object_name"), list(spec.get("fields") or [])


def db_design(state: ObjectState) -> dict:
    """Structural checks on the requested fields before anything is written."""
    object_name, fields = _spec_fields(state)
    if not object_name:
        return {"error": "Missing required fields: object_spec or field_spec", "current_node": "db_design"}

    conflicts: list[str] = []
    recommendations: list[str] = []
    seen: set[str] = set()
    for i, f in enumerate(fields):
        name = f.get("name")
        if not name:
            conflicts.append(f"Field {i} has no name")
            continue
        key = name.lower()
        if key in seen:
            conflicts.append(f"Duplicate field name: {name}")
        seen.add(key)
        if key in AUTO_GENERATED_FIELDS:
            conflicts.append(f"Field {name} is generated by the platform")
        if name != name.lower() or " " in name:
            recommendations.append(f"Use snake_case for field {name!r}")

    result = {
        "valid": not conflicts,
        "object_name": object_name,
        "conflicts": conflicts,
        "recommendations": recommendations,
    }
    logger.info("[DB_DESIGN] %s: %d field(s), %d conflict(s)", object_name, len(fields), len(conflicts))
    if conflicts:
        return {
            "db_design_result": result,
            "error": f"Schema design conflicts: {'; '.join(conflicts)}",
            "current_node": "db_design",
        }
    return {"db_design_result": result, "error": RESET, "current_node": "db_design"}


def map_field_type(hint: str | None) -> str | None:
    """Platform field type for a loose hint, or None when unknown."""
    if not hint:
        return None
    if hint in PLATFORM_FIELD_TYPES:
        return hint
    return TYPE_HINTS.get(hint.strip().lower())


def type_mapper(state: ObjectState) -> dict:
    object_name, fields = _spec_fields(state)
    if not object_name:
        return {"error": "Missing required fields: object_spec or field_spec", "current_node": "type_mapper"}

    mapped: list[dict] = []
    errors: list[str] = []
    warnings: list[str] = []
    for f in fields:
        action = f.get("action") or "create"
        entry = {
            "name": f["name"],
            "display_name": f.get("display_name") or f["name"].replace("_", " ").title(),
            "required": bool(f.get("required")),
            "description": f.get("description") or "",
            "action": action,
        }
        if action in ("delete", "recover"):
            mapped.append(entry)
            continue

        type_name = map_field_type(f.get("type_hint"))
        if type_name is None:
            warnings.append(f"Unknown type hint {f.get('type_hint')!r} for {f['name']}; using text")
            type_name = "text"
        entry["type_name"] = type_name
        if type_name == "pickList":
            options = list(f.get("options") or [])
            if not options:
                warnings.append(f"Picklist field {f['name']} has no options")
            entry["options"] = options
        if type_name == "relation":
            if not f.get("target_object"):
                errors.append(f"Relation field {f['name']} needs a target_object")
            entry["target_object"] = f.get("target_object")
        mapped.append(entry)

    result = {"object_name": object_name, "mapped_fields": mapped, "errors": errors, "warnings": warnings}
    for w in warnings:
        logger.warning("[TYPE_MAPPER] %s", w)
    if errors:
        return {
            "type_mapping_result": result,
            "error": f"Type mapping failed: {'; '.join(errors)}",
            "current_node": "type_mapper",
        }
    return {"type_mapping_result": result, "error": RESET, "current_node": "type_mapper"}


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def _field_payload(object_name: str, field: dict) -> dict:
    data = {
        "displayName": field["display_name"],
        "required": field["required"],
        "description": field["description"],
    }
    if "type_name" in field:
        data["typeName"] = field["type_name"]
    if field.get("options"):
        data["options"] = field["options"]
    if field.get("target_object"):
        data["targetObject"] = field["target_object"]
    return {"object_name": object_name, "name": field["name"], "data": data}


def plan_object_steps(state: dict) -> tuple[str, list[dict]]:
    """Return (object_name, ordered steps) for the current intent."""
    action = (state.get("intent") or {}).get("intent")
    if action == "delete_object":
        name = (
            (state.get("object_spec") or {}).get("object_name")
            or _target_name(state.get("intent"))
        )
        if not name:
            raise ValueError("No object name to delete")
        return name, [{
            "type": "delete_object", "kind": "object", "action": "delete", "name": name,
            "payload": {"name": name},
        }]

    mapping = state.get("type_mapping_result") or {}
    name = mapping.get("object_name")
    if not name:
        raise ValueError("Missing required fields: type_mapping_result")

    steps: list[dict] = []
    if action in ("create_object", "design_data_schema", "update_object_metadata"):
        spec = state.get("object_spec") or {}
        verb = "update" if action == "update_object_metadata" else "create"
        steps.append({
            "type": f"{verb}_object", "kind": "object", "action": verb, "name": name,
            "payload": {
                "name": name,
                "data": {
                    "displayName": spec.get("display_name") or name.replace("_", " ").title(),
                    "description": spec.get("description") or "",
                },
            },
        })
    for f in mapping.get("mapped_fields") or []:
        steps.append({
            "type": f"{f['action']}_field", "kind": "field", "action": f["action"], "name": f["name"],
            "payload": _field_payload(name, f),
        })
    return name, steps


def _make_object_executor_node(client) -> Callable:
    async def object_executor(state: ObjectState) -> dict:
        try:
            object_name, steps = plan_object_steps(state)
        except ValueError as exc:
            return {"error": str(exc), "current_node": "object_executor"}

        done = completed_steps(state)
        done_indices = {s["step_index"] for s in done}
        completed = list(done)
        errors: list[str] = []
        has_object_step = steps[0]["kind"] == "object"

        if done_indices:
            logger.info("[OBJECT_EXECUTOR] resuming %s: skipping step(s) %s", object_name, sorted(done_indices))

        for index, step in enumerate(steps):
            if index in done_indices:
                continue
            try:
                response = await client.apply_change(step["kind"], step["action"], step["payload"])
                entity_id = response["resource_id"]
            except Exception as exc:
                logger.warning("[OBJECT_EXECUTOR] step %d (%s %s) failed: %s", index, step["type"], step["name"], exc)
                errors.append(f"{step['type']} {step['name']}: {describe_failure(exc)}")
                if index == 0 and has_object_step:
                    break
                continue
            completed.append({
                "type": step["type"],
                "step_index": index,
                "entity_id": entity_id,
                "entity_name": step["name"],
            })

        completed.sort(key=lambda s: s["step_index"])
        if len(completed) == len(steps):
            status = "success"
        elif completed:
            status = "partial"
        else:
            status = "failed"

        object_step = next((s for s in completed if s["step_index"] == 0), None) if has_object_step else None
        if has_object_step:
            object_id = object_step["entity_id"] if object_step else None
        else:
            object_id = object_name if completed else None

        action = (state.get("intent") or {}).get("intent")
        result = {
            "status": status,
            "operation_type": action,
            "object_id": object_id,
            "field_ids": [s["entity_id"] for s in completed if s["type"].endswith("_field")],
            "errors": errors,
            "created_entities": (
                {"object": object_id} if object_step and object_step["type"] == "create_object" else {}
            ),
            "completed_steps": completed,
        }
        logger.info(
            "[OBJECT_EXECUTOR] %s %s -> %s (%d/%d steps)",
            action, object_name, status, len(completed), len(steps),
        )

        patch: dict = {"execution_result": result, "current_node": "object_executor"}
        if status == "success":
            patch["error"] = RESET
            patch["is_completed"] = True
        else:
            patch["error"] = "; ".join(errors) or f"Object {action} failed"
        return patch

    return object_executor


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

_ENTRY_LABELS = ("object_understanding", "field_understanding", "schema_understanding", "execute", "error")


@routes(*_ENTRY_LABELS)
def route_entry(state: ObjectState) -> str:
    intent = state.get("intent")
    if not intent:
        logger.warning("[OBJECT] no intent found")
        return "error"
    label = ENTRY_ROUTES.get(intent.get("intent"))
    if label is None:
        logger.warning("[OBJECT] unknown intent action %r", intent.get("intent"))
        return "error"
    return label


def _make_routers(max_retry: int) -> dict[str, Callable]:
    @routes("design", "retry", "error")
    def route_after_object_understanding(state: ObjectState) -> str:
        return route_stage(state, "object_spec", "design", max_retry)

    @routes("design", "retry", "error")
    def route_after_field_understanding(state: ObjectState) -> str:
        return route_stage(state, "field_spec", "design", max_retry)

    @routes("map", "retry", "error")
    def route_after_db_design(state: ObjectState) -> str:
        return route_stage(state, "db_design_result", "map", max_retry)

    @routes("execute", "retry", "error")
    def route_after_type_mapping(state: ObjectState) -> str:
        return route_stage(state, "type_mapping_result", "execute", max_retry)

    @routes("success", "retry", "error")
    def route_after_execution(state: ObjectState) -> str:
        return route_execution(state, max_retry)

    @routes(*_ENTRY_LABELS)
    def route_retry(state: ObjectState) -> str:
        if not can_retry(state, max_retry):
            return "error"
        if completed_steps(state):
            return "execute"
        return route_entry(state)

    return {
        "object_understanding": route_after_object_understanding,
        "field_understanding": route_after_field_understanding,
        "db_design": route_after_db_design,
        "type_mapper": route_after_type_mapping,
        "execution": route_after_execution,
        "retry": route_retry,
    }


# ---------------------------------------------------------------------------
# Graph factory
# ---------------------------------------------------------------------------


def build_object_graph(
    engine: ReasoningEngine,
    client,
    max_retry: int = 3,
    emit_event: Callable | None = None,
    temperature: float = 0.0,
):
    """Compile the object sub-workflow (see module docstring for the shape)."""
    r = _make_routers(max_retry)
    entry_targets = {
        "object_understanding": "object_understanding",
        "field_understanding": "field_understanding",
        "schema_understanding": "schema_understanding",
        "execute": "object_executor",
    }
    policy = RetryPolicy(max_retry_count=max_retry, resume_router=r["retry"], resume_targets=entry_targets)
    builder = WorkflowBuilder(ObjectState, "object", retry_policy=policy, emit_event=emit_event)

    builder.add_node("object_understanding", _make_object_understanding_node(engine, "object_understanding", temperature))
    builder.add_node("schema_understanding", _make_object_understanding_node(engine, "schema_understanding", temperature))
    builder.add_node("field_understanding", _make_field_understanding_node(engine, temperature))
    builder.add_node("db_design", db_design)
    builder.add_node("type_mapper", type_mapper)
    builder.add_node("object_executor", _make_object_executor_node(client))
    builder.add_handlers(
        success=make_success_handler("object", _success_message),
        error=make_error_handler("object"),
        retry=make_retry_handler("object", max_retry),
    )

    builder.set_entry_router(route_entry, {**entry_targets, "error": ERROR_NODE})

    understanding_exits = {"design": "db_design", "retry": RETRY_NODE, "error": ERROR_NODE}
    builder.add_conditional_edges("object_understanding", r["object_understanding"], understanding_exits)
    builder.add_conditional_edges("schema_understanding", r["object_understanding"], understanding_exits)
    builder.add_conditional_edges("field_understanding", r["field_understanding"], understanding_exits)
    builder.add_conditional_edges(
        "db_design", r["db_design"],
        {"map": "type_mapper", "retry": RETRY_NODE, "error": ERROR_NODE},
    )
    builder.add_conditional_edges(
        "type_mapper", r["type_mapper"],
        {"execute": "object_executor", "retry": RETRY_NODE, "error": ERROR_NODE},
    )
    builder.add_conditional_edges(
        "object_executor", r["execution"],
        {"success": SUCCESS_NODE, "retry": RETRY_NODE, "error": ERROR_NODE},
    )
    # Never checkpointed: every invocation starts from the state the handler builds.
    return builder.build(checkpointer=False)


def _success_message(state: dict) -> str:
    result = state.get("execution_result") or {}
    return (
        f"Object {result.get('operation_type')} completed: {result.get('object_id')} "
        f"({len(result.get('field_ids') or [])} field change(s))"
    )
