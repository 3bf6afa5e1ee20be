"""Scripted stand-ins for the reasoning engine and the platform client.

FakeEngine answers every extract() call with the arguments scripted for the
offered tool.  A list of answers is consumed in order (the last one repeats);
None means "answer without a tool call", which extract() turns into an
ExtractionError.

FakeClient records every apply_change() call and can be told to reject a
(kind, name) pair a number of times before accepting it, with PlatformError
or with the exception type given as error.
"""

from __future__ import annotations

import copy
from typing import Any

from nflow_agent.client import PlatformError
from nflow_agent.reasoning import EngineResponse, ReasoningEngine, ToolCall


class FakeEngine(ReasoningEngine):
    def __init__(self, answers: dict[str, Any] | None = None) -> None:
        self.answers: dict[str, Any] = {
            k: list(v) if isinstance(v, list) else v for k, v in (answers or {}).items()
        }
        self.calls: list[dict[str, Any]] = []

    @property
    def model_id(self) -> str:
        return "fake/scripted"

    def calls_for(self, tool_name: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["tool"] == tool_name]

    async def complete(self, messages, system=None, tools=None, temperature=0.2, require_tool=False):
        tool = tools[0].name if tools else None
        self.calls.append({
            "tool": tool,
            "system": system,
            "messages": list(messages),
            "require_tool": require_tool,
        })

        answer = self.answers.get(tool)
        if isinstance(answer, list):
            answer = answer.pop(0) if len(answer) > 1 else (answer[0] if answer else None)
        if isinstance(answer, Exception):
            raise answer
        if answer is None:
            return EngineResponse(content="I am not sure what you mean.")
        return EngineResponse(
            content=None,
            tool_calls=[ToolCall(id=f"call_{len(self.calls)}", name=tool, arguments=copy.deepcopy(answer))],
            stop_reason="tool_use",
        )


class FakeClient:
    def __init__(
        self,
        failures: dict[tuple[str, str], int] | None = None,
        error: type[Exception] | None = None,
    ) -> None:
        self.failures = dict(failures or {})
        self.error = error
        self.calls: list[tuple[str, str, str | None]] = []
        self.payloads: list[dict] = []

    async def apply_change(self, kind: str, action: str, payload: dict) -> dict:
        name = payload.get("name")
        self.calls.append((kind, action, name))
        self.payloads.append(payload)
        remaining = self.failures.get((kind, name), 0)
        if remaining > 0:
            self.failures[(kind, name)] = remaining - 1
            if self.error is not None:
                raise self.error(f"{kind} {name}: unreadable reply")
            raise PlatformError(f"{kind} {name} rejected", status_code=400)
        return {"name": name, "resource_id": name}


def intent(domain: str, action: str, target: str | list | None = None, index: int = 0, **extra) -> dict:
    return {
        "id": f"intent-{index}",
        "domain": domain,
        "intent": action,
        "target": target,
        "details": extra.pop("details", None),
        **extra,
    }


def coordinator_state(intents: list[dict], index: int = 0, **overrides) -> dict:
    """A coordinator state positioned at *index* with the given intents classified."""
    state = {
        "original_message": "Create what I asked for",
        "chat_session_id": "session-1",
        "messages": [],
        "created_entities": [],
        "classified_intent": {"intents": intents, "dependencies": []},
        "current_intent_index": index,
        "processed_intents": [],
        "errors": [],
        "application_results": [],
        "object_results": [],
        "error": None,
        "current_node": None,
        "retry_count": 0,
        "is_completed": False,
        "chat_reply": None,
        "summary": None,
    }
    state.update(overrides)
    return state
