"""State merge rules and the reset marker.

Verifies:
  1. Absent keys keep their value; overwrite fields merge as patch ?? old
     (None keeps the old value, the latest non-None value wins)
  2. Accumulating fields append; [RESET] empties them
  3. processed_intents deduplicates and keeps first-seen order
  4. Per-intent results are replaced by intent_index, not duplicated
  5. RESET on int/bool fields restores 0/False; on the other overwrite fields, None
  6. RESET is detected by value, so a serialized marker still resets
  7. Unknown patch keys raise KeyError
  8. apply_patch never mutates the input state
  9. strip_reset removes stray markers from caller-facing output
  10. A compiled LangGraph graph merges patches exactly like apply_patch,
      including RESET as the first write to a channel
  11. initial_state seeds every overwrite field
"""

from __future__ import annotations

import json

import pytest
from langgraph.graph import END, START, StateGraph

from nflow_agent.agent.state import (
    RESET,
    ApplicationState,
    CoordinatorState,
    ObjectState,
    apply_patch,
    field_reducers,
    initial_state,
    is_reset,
    strip_reset,
    union_indices,
)
from nflow_agent.reasoning import Message

from fakes import coordinator_state


class TestMergeRules:
    def test_absent_keys_are_kept(self):
        state = coordinator_state([], current_node="classify_intent", summary="done")
        merged = apply_patch(CoordinatorState, state, {"current_node": "process_next_intent"})
        assert merged["summary"] == "done"
        assert merged["current_node"] == "process_next_intent"

    def test_accumulating_fields_append(self):
        state = coordinator_state([], errors=[{"intent_id": "a"}])
        merged = apply_patch(CoordinatorState, state, {"errors": [{"intent_id": "b"}]})
        assert [e["intent_id"] for e in merged["errors"]] == ["a", "b"]

    def test_messages_append(self):
        state = coordinator_state([], messages=[Message(role="user", content="hi")])
        merged = apply_patch(
            CoordinatorState, state, {"messages": [Message(role="assistant", content="hello")]}
        )
        assert [m.role for m in merged["messages"]] == ["user", "assistant"]

    def test_processed_intents_deduplicated(self):
        state = coordinator_state([], processed_intents=[1, 0])
        merged = apply_patch(CoordinatorState, state, {"processed_intents": [0, 2]})
        assert merged["processed_intents"] == [1, 0, 2]

    def test_results_replaced_by_intent_index(self):
        state = coordinator_state([], object_results=[
            {"intent_index": 0, "status": "partial"},
            {"intent_index": 1, "status": "success"},
        ])
        merged = apply_patch(
            CoordinatorState, state, {"object_results": [{"intent_index": 0, "status": "success"}]}
        )
        assert [(r["intent_index"], r["status"]) for r in merged["object_results"]] == [
            (0, "success"),
            (1, "success"),
        ]

    def test_none_keeps_previous_value(self):
        state = coordinator_state([], error="boom", summary="done")
        merged = apply_patch(CoordinatorState, state, {"error": None, "summary": None})
        assert merged["error"] == "boom"
        assert merged["summary"] == "done"

    def test_latest_value_wins(self):
        state = coordinator_state([], current_node="classify_intent")
        merged = apply_patch(CoordinatorState, state, {"current_node": "validate_classification"})
        assert merged["current_node"] == "validate_classification"

    def test_apply_patch_does_not_mutate_input(self):
        state = coordinator_state([], errors=[])
        apply_patch(CoordinatorState, state, {"errors": [{"intent_id": "x"}], "error": "boom"})
        assert state["errors"] == []
        assert state["error"] is None

    def test_unknown_key_raises(self):
        with pytest.raises(KeyError):
            apply_patch(CoordinatorState, coordinator_state([]), {"not_a_field": 1})

    def test_object_state_has_no_coordinator_fields(self):
        with pytest.raises(KeyError):
            apply_patch(ObjectState, {}, {"processed_intents": [0]})


# ---------------------------------------------------------------------------
# Reset marker
# ---------------------------------------------------------------------------


class TestReset:
    def test_reset_restores_defaults(self):
        state = coordinator_state(
            [],
            index=3,
            retry_count=2,
            is_completed=True,
            processed_intents=[0, 1, 2],
            errors=[{"intent_id": "a"}],
        )
        merged = apply_patch(CoordinatorState, state, {
            "current_intent_index": RESET,
            "retry_count": RESET,
            "is_completed": RESET,
            "processed_intents": [RESET],
            "errors": [RESET],
        })
        assert merged["current_intent_index"] == 0
        assert merged["retry_count"] == 0
        assert merged["is_completed"] is False
        assert merged["processed_intents"] == []
        assert merged["errors"] == []

    def test_reset_on_optional_field_gives_none(self):
        state = coordinator_state([], summary="old summary")
        merged = apply_patch(CoordinatorState, state, {"summary": RESET})
        assert merged["summary"] is None

    def test_reset_detected_by_value(self):
        serialized = json.loads(json.dumps({"v": RESET, "l": [RESET]}))
        assert is_reset(serialized["v"])
        assert is_reset(serialized["l"])
        assert union_indices([1, 2], serialized["l"]) == []

    def test_ordinary_values_are_not_reset(self):
        assert not is_reset("reset")
        assert not is_reset([RESET, RESET])
        assert not is_reset([0])
        assert not is_reset(None)

    def test_strip_reset(self):
        out = strip_reset({"a": RESET, "b": [1, RESET, 2], "c": {"d": RESET}})
        assert out == {"a": None, "b": [1, 2], "c": {"d": None}}

    @pytest.mark.parametrize("schema", [CoordinatorState, ApplicationState, ObjectState])
    def test_every_field_has_a_reducer(self, schema):
        reducers = field_reducers(schema)
        assert all(reducer is not None for reducer in reducers.values())
        assert reducers["error"](None, RESET) is None

    def test_initial_state_seeds_overwrite_fields(self):
        state = initial_state(ObjectState, original_message="x", retry_count=0)
        assert state["object_spec"] is None
        assert state["execution_result"] is None
        assert state["original_message"] == "x"
        assert state["retry_count"] == 0
        assert "messages" not in state


# ---------------------------------------------------------------------------
# Compiled graph vs. apply_patch
# ---------------------------------------------------------------------------


def _two_step_graph(first: dict, second: dict):
    graph = StateGraph(CoordinatorState)
    graph.add_node("first", lambda state: first)
    graph.add_node("second", lambda state: second)
    graph.add_edge(START, "first")
    graph.add_edge("first", "second")
    graph.add_edge("second", END)
    return graph.compile()


class TestEngineParity:
    @pytest.mark.asyncio
    async def test_engine_matches_apply_patch(self):
        first = {"error": "boom", "classified_intent": {"intents": []}, "summary": "s", "retry_count": 2}
        second = {"error": RESET, "classified_intent": RESET, "summary": None, "retry_count": RESET}
        seed = initial_state(CoordinatorState, original_message="x", chat_session_id="s")

        final = await _two_step_graph(first, second).ainvoke(seed)

        expected = apply_patch(CoordinatorState, apply_patch(CoordinatorState, seed, first), second)
        for key in ("error", "classified_intent", "summary", "retry_count"):
            assert final[key] == expected[key]
        assert final["error"] is None
        assert final["classified_intent"] is None
        assert final["summary"] == "s"
        assert final["retry_count"] == 0

    @pytest.mark.asyncio
    async def test_reset_as_first_write(self):
        patch = {"error": RESET, "chat_reply": RESET, "current_node": "state_reset"}
        seed = initial_state(CoordinatorState, original_message="x", chat_session_id="s")

        final = await _two_step_graph(patch, {"current_node": "done"}).ainvoke(seed)

        assert final["error"] is None
        assert final["chat_reply"] is None
        assert final["current_node"] == "done"
