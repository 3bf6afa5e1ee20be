"""Extraction tool schemas, closed vocabularies and system prompts.

Each LLM touch-point in the graphs is an extract() call against one of the
ToolDefs below; the model must answer with that tool's arguments.  The
domain/intent vocabularies are the single source of truth for both the
classification schema and validate_classification.
"""

from __future__ import annotations

from typing import Any

from nflow_agent.reasoning import ToolDef


# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

#: domain tag → allowed intent actions
DOMAIN_INTENTS: dict[str, tuple[str, ...]] = {
    "application": ("create_application", "update_application", "delete_application"),
    "object": (
        "create_object",
        "update_object_metadata",
        "manipulate_object_fields",
        "delete_object",
        "design_data_schema",
    ),
    "layout": ("create_layout", "update_layout", "delete_layout"),
    "flow": ("create_flow", "update_flow", "delete_flow"),
}

DOMAINS: tuple[str, ...] = tuple(DOMAIN_INTENTS)
INTENTS: tuple[str, ...] = tuple(i for actions in DOMAIN_INTENTS.values() for i in actions)

#: Field type names the platform accepts.
PLATFORM_FIELD_TYPES: frozenset[str] = frozenset({
    "text", "longText", "numeric", "boolean", "dateTime", "date",
    "pickList", "relation", "json", "email", "phone", "url", "currency",
})


def is_valid_combination(domain: str, intent: str) -> bool:
    return intent in DOMAIN_INTENTS.get(domain, ())


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


def _td(name: str, description: str, properties: dict[str, Any], required: list[str]) -> ToolDef:
    return ToolDef(
        name=name,
        description=description,
        parameters={
            "type": "object",
            "properties": properties,
            "required": required,
        },
    )


_FIELD_ITEM: dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "description": "Technical field name (snake_case)"},
        "display_name": {"type": "string"},
        "type_hint": {
            "type": "string",
            "description": "Loose type: text, number, boolean, date, email, picklist, relation…",
        },
        "required": {"type": "boolean"},
        "description": {"type": "string"},
        "options": {"type": "array", "items": {"type": "string"}, "description": "Picklist values"},
        "target_object": {"type": "string", "description": "Related object for relation fields"},
        "action": {"type": "string", "enum": ["create", "update", "delete", "recover"]},
    },
    "required": ["name"],
}


CHAT_FILTER_TOOL = _td(
    "chat_filter",
    "Decide whether the user wants to create, update or delete platform resources "
    "(applications, objects, fields, layouts, flows) or is just chatting.",
    {
        "is_platform_operation": {
            "type": "boolean",
            "description": "True for any request to manage platform resources; false for casual chat.",
        },
        "chat_response": {
            "type": "string",
            "description": "When is_platform_operation is false, the reply to send to the user.",
        },
    },
    ["is_platform_operation"],
)

INTENT_CLASSIFIER_TOOL = _td(
    "intent_classifier",
    "Classify every intent in the user request. A request may contain several intents; "
    "declare dependencies between them by index.",
    {
        "intents": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "domain": {"type": "string", "enum": list(DOMAINS)},
                    "intent": {"type": "string", "enum": list(INTENTS)},
                    "target": {
                        "anyOf": [
                            {"type": "string"},
                            {"type": "array", "items": {"type": "string"}},
                        ],
                        "description": "Name(s) of the resource(s) the intent applies to",
                    },
                    "details": {"description": "Everything the worker needs to carry out the intent"},
                    "priority": {"type": "integer", "minimum": 1},
                },
                "required": ["domain", "intent"],
            },
        },
        "dependencies": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "dependent_intent_index": {"type": "integer"},
                    "depends_on_intent_index": {"type": "integer"},
                    "reason": {"type": "string"},
                },
                "required": ["dependent_intent_index", "depends_on_intent_index"],
            },
        },
    },
    ["intents"],
)

APPLICATION_SPEC_TOOL = _td(
    "application_spec",
    "Extract the application specification from the request.",
    {
        "app_name": {"type": "string"},
        "description": {"type": "string"},
        "objects": {"type": "array", "items": {"type": "string"}},
        "layouts": {"type": "array", "items": {"type": "string"}},
        "flows": {"type": "array", "items": {"type": "string"}},
        "metadata": {"type": "object"},
    },
    ["app_name"],
)

OBJECT_SPEC_TOOL = _td(
    "object_spec",
    "Extract the object (table) specification and its fields from the request.",
    {
        "object_name": {"type": "string"},
        "display_name": {"type": "string"},
        "description": {"type": "string"},
        "fields": {"type": "array", "items": _FIELD_ITEM},
        "metadata": {"type": "object"},
    },
    ["object_name"],
)

FIELD_SPEC_TOOL = _td(
    "field_spec",
    "Extract the field operations requested on an existing object.",
    {
        "object_name": {"type": "string"},
        "fields": {"type": "array", "items": _FIELD_ITEM},
    },
    ["object_name", "fields"],
)

SCHEMA_DESIGN_TOOL = _td(
    "schema_design",
    "Design one data object (table) that satisfies the described data schema.",
    {
        "object_name": {"type": "string"},
        "display_name": {"type": "string"},
        "description": {"type": "string"},
        "fields": {"type": "array", "items": _FIELD_ITEM},
    },
    ["object_name", "fields"],
)


# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------

CHAT_FILTER_PROMPT = """\
You are the front desk of a low-code platform assistant. Decide whether the \
user's message asks to create, update or delete applications, objects, fields, \
layouts or flows. Greetings, thanks, status questions and general chat are not \
platform operations; answer those directly and briefly in chat_response."""

INTENT_CLASSIFIER_PROMPT = """\
You classify user requests for a low-code platform into intents.
Domains and their intents:
{vocabulary}

Rules:
- Emit one intent per distinct resource operation, in the order they should run.
- When an intent needs another one to finish first (e.g. an object inside an \
application that is created in the same request), add a dependency from the \
dependent intent's index to the index it depends on.
- Never create circular dependencies.
- Put names in target and every other requirement in details."""

APPLICATION_UNDERSTANDING_PROMPT = """\
Extract the application the user wants to {operation}. app_name is required. \
List the object, layout and flow names the application should contain."""

OBJECT_UNDERSTANDING_PROMPT = """\
Extract the object the user wants to {operation} and every field it should \
have. Use snake_case technical names and give each field a loose type_hint."""

FIELD_UNDERSTANDING_PROMPT = """\
Extract the field operations the user wants on an existing object. Give each \
field an action (create, update, delete or recover) and a loose type_hint."""

SCHEMA_UNDERSTANDING_PROMPT = """\
Design a single object that stores the data described by the user. Choose \
sensible snake_case field names and loose type hints."""


def vocabulary_block() -> str:
    return "\n".join(f"- {d}: {', '.join(actions)}" for d, actions in DOMAIN_INTENTS.items())
