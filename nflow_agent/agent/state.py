"""State definitions and merge rules for the coordinator and domain graphs.

Every graph's state is a TypedDict that flows through each node. A node
returns a *patch*: a partial dict holding only the keys it wants to change.
For each key the patch carries one of three instructions:

  Keep   — key absent from the patch, or present with None; the old value
           persists (overwrite fields merge as ``patch ?? old``).
  Value  — key present; the field's reducer combines it with the old value
           (overwrite fields: latest non-None wins, accumulating fields: append).
  Reset  — the value is RESET (or [RESET] for list fields); the field is
           restored to its declared default.

A field is therefore cleared with RESET, never with None.

RESET is a str-valued enum member, detected by equality rather than identity,
so a patch that round-trips through a checkpoint serializer still resets.

apply_patch() is the pure form of the merge LangGraph performs between
nodes; it reads the same Annotated reducers from the TypedDict.  LangGraph
stores the first write to a channel without a value verbatim, so graph
inputs are built with initial_state(), which writes None to every
overwrite field up front.
"""

from __future__ import annotations

import enum
import typing
from typing import Annotated, Any, Callable, TypedDict

from nflow_agent.reasoning import Message


# ---------------------------------------------------------------------------
# Reset marker
# ---------------------------------------------------------------------------


class ResetMarker(str, enum.Enum):
    """Patch value meaning "restore this field to its declared default"."""

    RESET = "__reset__"


RESET = ResetMarker.RESET


def is_reset(value: Any) -> bool:
    """True for RESET itself or a single-element list holding only RESET."""
    if isinstance(value, str):
        return value == RESET.value
    if isinstance(value, (list, tuple)) and len(value) == 1:
        return isinstance(value[0], str) and value[0] == RESET.value
    return False


# ---------------------------------------------------------------------------
# Reducers
# ---------------------------------------------------------------------------


def append_messages(existing: list[Message] | None, incoming: list[Message] | None) -> list[Message]:
    """Concatenate new log entries onto the conversation history."""
    if is_reset(incoming):
        return []
    return (existing or []) + list(incoming or [])


def accumulate(existing: list | None, incoming: list | None) -> list:
    """Append records (errors, results) to an accumulating list."""
    if is_reset(incoming):
        return []
    return (existing or []) + list(incoming or [])


def union_indices(existing: list[int] | None, incoming: list[int] | None) -> list[int]:
    """Append processed-intent indices, dropping duplicates, first-seen order kept."""
    if is_reset(incoming):
        return []
    merged = list(existing or [])
    for idx in incoming or []:
        if idx not in merged:
            merged.append(idx)
    return merged


def upsert_by_intent(existing: list[dict] | None, incoming: list[dict] | None) -> list[dict]:
    """Accumulate per-intent results; a later result for the same intent index replaces the earlier one."""
    if is_reset(incoming):
        return []
    merged = list(existing or [])
    for item in incoming or []:
        key = item.get("intent_index")
        merged = [m for m in merged if m.get("intent_index") != key]
        merged.append(item)
    return sorted(merged, key=lambda m: m.get("intent_index", 0))


def overwrite(default: Any = None) -> Callable[[Any, Any], Any]:
    """Overwrite-latest reducer: ``incoming ?? existing``, RESET → *default*.

    The returned reducer carries ``default`` so initial_state() can seed it.
    """

    def _reduce(existing: Any, incoming: Any) -> Any:
        if is_reset(incoming):
            return default
        if incoming is None:
            return default if is_reset(existing) else existing
        return incoming

    _reduce.__name__ = f"overwrite_default_{default!r}"
    _reduce.default = default  # type: ignore[attr-defined]
    return _reduce


# ---------------------------------------------------------------------------
# Pure merge
# ---------------------------------------------------------------------------


def field_reducers(schema: type) -> dict[str, Callable[[Any, Any], Any] | None]:
    """Map each field of a state TypedDict to its reducer (None = plain last value)."""
    hints = typing.get_type_hints(schema, include_extras=True)
    reducers: dict[str, Callable[[Any, Any], Any] | None] = {}
    for name, hint in hints.items():
        reducer = None
        if typing.get_origin(hint) is Annotated:
            for meta in hint.__metadata__:
                if callable(meta):
                    reducer = meta
                    break
        reducers[name] = reducer
    return reducers


def apply_patch(schema: type, state: dict[str, Any], patch: dict[str, Any] | None) -> dict[str, Any]:
    """Return a new state with *patch* merged in. *state* is never mutated.

    Keys absent from the patch are untouched. Unknown keys raise KeyError,
    matching LangGraph's refusal to write channels a graph does not declare.
    """
    reducers = field_reducers(schema)
    merged = dict(state)
    for key, value in (patch or {}).items():
        if key not in reducers:
            raise KeyError(f"{schema.__name__} has no field {key!r}")
        reducer = reducers[key]
        if reducer is None:
            merged[key] = value
        else:
            merged[key] = reducer(merged.get(key), value)
    return merged


def initial_state(schema: type, **values: Any) -> dict[str, Any]:
    """Graph input with every overwrite field at its declared default, plus *values*.

    On a fresh thread this gives each channel a real first value; on a
    continuing thread the None defaults merge as Keep.
    """
    state: dict[str, Any] = {}
    for name, reducer in field_reducers(schema).items():
        if reducer is not None and hasattr(reducer, "default"):
            state[name] = None
    state.update(values)
    return state


def strip_reset(value: Any) -> Any:
    """Recursively replace any stray RESET values with None (caller-facing output)."""
    if isinstance(value, dict):
        return {k: strip_reset(v) for k, v in value.items()}
    if isinstance(value, list):
        return [strip_reset(v) for v in value if not is_reset(v)]
    if is_reset(value):
        return None
    return value


# ---------------------------------------------------------------------------
# Shared records
# ---------------------------------------------------------------------------


class IntentError(TypedDict):
    """One failed intent, recorded in the coordinator's accumulating error list."""

    intent_id: str
    intent_index: int | None
    domain: str | None
    error_message: str
    timestamp: str
    retry_count: int


class CompletedStep(TypedDict):
    """One already-applied write of a multi-step execution."""

    type: str          # "create_application" | "create_object" | "create_field" | ...
    step_index: int
    entity_id: str
    entity_name: str | None


class ExecutionResult(TypedDict, total=False):
    """Outcome of a side-effecting execution node."""

    status: str        # "success" | "partial" | "failed"
    operation_type: str
    app_id: str | None
    object_id: str | None
    field_ids: list[str]
    errors: list[str]
    created_entities: dict[str, Any]
    completed_steps: list[CompletedStep]


# ---------------------------------------------------------------------------
# Coordinator state
# ---------------------------------------------------------------------------


class CoordinatorState(TypedDict):
    """Full state of one coordinator run (one user request within a session).

    Lifecycle:
        1. The run surface seeds messages, original_message, chat_session_id.
        2. state_reset clears per-request scratch fields with RESET while the
           session-scoped accumulators (messages, created_entities) survive.
        3. Each node returns a patch; LangGraph merges it with the reducers
           declared below.
    """

    # -----------------------------------------------------------------------
    # Request identity (written by the run surface only)
    # -----------------------------------------------------------------------

    original_message: Annotated[str, overwrite("")]
    chat_session_id: Annotated[str, overwrite("")]

    # -----------------------------------------------------------------------
    # Session-scoped accumulators (never reset)
    # -----------------------------------------------------------------------

    messages: Annotated[list[Message], append_messages]

    # Applications/objects created earlier in this session, fed back into the
    # classification prompt as execution context.
    # Entries: {"kind": "application"|"object", "name": str, "id": str}
    created_entities: Annotated[list[dict], accumulate]

    # -----------------------------------------------------------------------
    # Classification (per request)
    # -----------------------------------------------------------------------

    # {"intents": [{"id", "domain", "intent", "target", "details", "priority"}],
    #  "dependencies": [{"dependent_intent_index", "depends_on_intent_index", "reason"}]}
    classified_intent: Annotated[dict | None, overwrite()]

    # -----------------------------------------------------------------------
    # Intent sequencing (per request)
    # -----------------------------------------------------------------------

    current_intent_index: Annotated[int, overwrite(0)]
    processed_intents: Annotated[list[int], union_indices]
    errors: Annotated[list[IntentError], accumulate]
    application_results: Annotated[list[dict], upsert_by_intent]
    object_results: Annotated[list[dict], upsert_by_intent]

    # -----------------------------------------------------------------------
    # Control
    # -----------------------------------------------------------------------

    error: Annotated[str | None, overwrite()]
    current_node: Annotated[str | None, overwrite()]
    retry_count: Annotated[int, overwrite(0)]
    is_completed: Annotated[bool, overwrite(False)]

    # -----------------------------------------------------------------------
    # Outputs
    # -----------------------------------------------------------------------

    # Direct answer when the request was casual conversation.
    chat_reply: Annotated[str | None, overwrite()]

    # Human-readable wrap-up written by summarize_execution.
    summary: Annotated[str | None, overwrite()]


# ---------------------------------------------------------------------------
# Application sub-graph state
# ---------------------------------------------------------------------------


class ApplicationState(TypedDict):
    """State of one application sub-graph invocation.

    Built fresh from the coordinator state for every intent; never shared.
    """

    messages: Annotated[list[Message], append_messages]
    original_message: Annotated[str, overwrite("")]
    chat_session_id: Annotated[str, overwrite("")]
    intent: Annotated[dict | None, overwrite()]
    operation_type: Annotated[str | None, overwrite()]  # "create" | "update" | "delete"

    # {"app_name", "description", "objects", "layouts", "flows", "metadata"}
    application_spec: Annotated[dict | None, overwrite()]

    # application_spec + {"app_id", "api_parameters", "tag_names", "profiles"}
    enriched_spec: Annotated[dict | None, overwrite()]

    execution_result: Annotated[ExecutionResult | None, overwrite()]

    error: Annotated[str | None, overwrite()]
    current_node: Annotated[str | None, overwrite()]
    retry_count: Annotated[int, overwrite(0)]
    is_completed: Annotated[bool, overwrite(False)]


# ---------------------------------------------------------------------------
# Object sub-graph state
# ---------------------------------------------------------------------------


class ObjectState(TypedDict):
    """State of one object sub-graph invocation.

    The understanding/design/mapping fields are private to the sub-graph and
    start as None on every invocation.
    """

    messages: Annotated[list[Message], append_messages]
    original_message: Annotated[str, overwrite("")]
    chat_session_id: Annotated[str, overwrite("")]
    intent: Annotated[dict | None, overwrite()]

    # Understanding phase
    # {"object_name", "display_name", "description", "fields": [...], "metadata"}
    object_spec: Annotated[dict | None, overwrite()]
    # {"object_name", "fields": [{"name", "type_hint", "action", ...}]}
    field_spec: Annotated[dict | None, overwrite()]

    # Planning phase
    db_design_result: Annotated[dict | None, overwrite()]
    type_mapping_result: Annotated[dict | None, overwrite()]

    # Execution phase
    execution_result: Annotated[ExecutionResult | None, overwrite()]

    error: Annotated[str | None, overwrite()]
    current_node: Annotated[str | None, overwrite()]
    retry_count: Annotated[int, overwrite(0)]
    is_completed: Annotated[bool, overwrite(False)]
