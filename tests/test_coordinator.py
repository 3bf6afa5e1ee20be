"""Coordinator workflow end to end (FakeEngine + FakeClient + MemorySaver).

Verifies:
  Pure nodes
  1. state_reset clears per-request fields and leaves session fields alone
  2. summarize_execution counts outcomes per intent

  Full runs
  3. Casual chat → handle_success with the chat reply, no classification
  4. Chat filter without a tool call fails open to classification
  5. application + dependent object intent → both succeed, application first;
     is_completed stays False until the terminal handler
  6. Intents listed in reverse order still run dependency-first
  7. Dependency cycle → handle_error, classification not retried
  8. Classification extraction always failing → retried up to the ceiling
  9. K failing intents → all K processed, K errors, run still summarized
  10. A failed intent does not leak into the next intent's sub-graph
  11. Second request in a session sees the first request's created entities
      and starts from freshly reset per-request fields
"""

from __future__ import annotations

import pytest

from nflow_agent.agent.coordinator import (
    build_coordinator_graph,
    create_dispatcher,
    state_reset,
    summarize_execution,
)
from nflow_agent.agent.domains.application import ApplicationSubgraphHandler
from nflow_agent.agent.handlers import MAX_RETRY_MESSAGE
from nflow_agent.agent.registry import DomainDispatcher
from nflow_agent.agent.settings import AgentSettings
from nflow_agent.agent.state import RESET, CoordinatorState, apply_patch, initial_state
from nflow_agent.agent.subgraph import SubgraphWrapper
from nflow_agent.reasoning import Message

from fakes import FakeClient, FakeEngine, coordinator_state, intent

PLATFORM = {"is_platform_operation": True}


def _classification(intents: list[dict], deps: list[tuple[int, int]] = ()) -> dict:
    return {
        "intents": [{k: v for k, v in i.items() if k != "id"} for i in intents],
        "dependencies": [
            {"dependent_intent_index": a, "depends_on_intent_index": b, "reason": "needs it"} for a, b in deps
        ],
    }


def _graph(engine, client=None, dispatcher=None, max_retry=3):
    dispatcher = dispatcher or create_dispatcher(engine, client or FakeClient(), AgentSettings())
    return build_coordinator_graph(engine, dispatcher, max_retry=max_retry)


async def _run(graph, message: str, session: str = "session-1") -> dict:
    return await graph.ainvoke(
        initial_state(
            CoordinatorState,
            original_message=message,
            chat_session_id=session,
            messages=[Message(role="user", content=message)],
        ),
        config={"configurable": {"thread_id": session}, "recursion_limit": 100},
    )


# ---------------------------------------------------------------------------
# Pure nodes
# ---------------------------------------------------------------------------


class TestPureNodes:
    def test_state_reset(self):
        state = coordinator_state(
            [intent("object", "create_object", "a")],
            index=1,
            processed_intents=[0],
            errors=[{"intent_id": "x"}],
            retry_count=2,
            is_completed=True,
            summary="old",
            created_entities=[{"kind": "object", "name": "a", "id": "a"}],
            messages=[Message(role="user", content="earlier")],
        )
        patch = state_reset(state)
        assert patch["current_intent_index"] is RESET
        merged = apply_patch(CoordinatorState, state, patch)

        assert merged["classified_intent"] is None
        assert merged["current_intent_index"] == 0
        assert merged["processed_intents"] == []
        assert merged["errors"] == []
        assert merged["retry_count"] == 0
        assert merged["is_completed"] is False
        assert merged["summary"] is None
        assert merged["created_entities"] == state["created_entities"]
        assert merged["messages"] == state["messages"]

    def test_summarize(self):
        intents = [
            intent("application", "create_application", "crm", 0),
            intent("object", "create_object", "contact", 1),
            intent("layout", "create_layout", "main", 2),
        ]
        state = coordinator_state(
            intents,
            application_results=[{"intent_index": 0, "status": "success"}],
            object_results=[{"intent_index": 1, "status": "failed"}],
            errors=[{"domain": "object", "intent_index": 1, "error_message": "rejected"}],
        )
        summary = summarize_execution(state)["summary"]
        assert summary.splitlines()[0] == (
            "Processed 3 intent(s): 1 succeeded, 0 partial, 1 failed, 1 skipped"
        )
        assert "2. create_object contact: failed" in summary
        assert "rejected" in summary


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------


class TestCoordinatorRuns:
    @pytest.mark.asyncio
    async def test_chat(self):
        engine = FakeEngine({"chat_filter": {"is_platform_operation": False, "chat_response": "Hi there!"}})
        final = await _run(_graph(engine), "hello")

        assert final["current_node"] == "handle_success"
        assert final["chat_reply"] == "Hi there!"
        assert final["classified_intent"] is None
        assert engine.calls_for("intent_classifier") == []

    @pytest.mark.asyncio
    async def test_chat_filter_fails_open(self):
        engine = FakeEngine({
            "chat_filter": None,
            "intent_classifier": _classification([intent("object", "delete_object", "contact")]),
        })
        client = FakeClient()
        final = await _run(_graph(engine, client), "delete contact")

        assert final["chat_reply"] is None
        assert client.calls == [("object", "delete", "contact")]

    @pytest.mark.asyncio
    async def test_dependent_intents(self):
        engine = FakeEngine({
            "chat_filter": PLATFORM,
            "intent_classifier": _classification(
                [intent("application", "create_application", "crm"), intent("object", "create_object", "contact")],
                deps=[(1, 0)],
            ),
            "application_spec": {"app_name": "crm"},
            "object_spec": {"object_name": "contact", "fields": [{"name": "email", "type_hint": "email"}]},
        })
        client = FakeClient()
        final = await _run(_graph(engine, client), "Create a CRM app with a contact object")

        assert final["current_node"] == "handle_success"
        assert final["error"] is None
        assert final["processed_intents"] == [0, 1]
        assert final["errors"] == []
        assert client.calls == [
            ("application", "create", "crm"),
            ("object", "create", "contact"),
            ("field", "create", "email"),
        ]
        assert final["application_results"][0]["status"] == "success"
        assert final["object_results"][0]["intent_index"] == 1
        assert {(e["kind"], e["name"]) for e in final["created_entities"]} == {
            ("application", "crm"),
            ("object", "contact"),
        }
        assert final["summary"].startswith("Processed 2 intent(s): 2 succeeded")
        assert all(i["id"] for i in final["classified_intent"]["intents"])

    @pytest.mark.asyncio
    async def test_not_completed_until_terminal_handler(self):
        engine = FakeEngine({
            "chat_filter": PLATFORM,
            "intent_classifier": _classification(
                [intent("object", "create_object", "a"), intent("object", "create_object", "b")]
            ),
            "object_spec": [{"object_name": "a", "fields": []}, {"object_name": "b", "fields": []}],
        })
        graph = _graph(engine)
        final = await _run(graph, "objects a and b", session="mid-run")

        history = [
            snapshot.values
            async for snapshot in graph.aget_state_history({"configurable": {"thread_id": "mid-run"}})
        ]
        mid_run = [v for v in history if v.get("current_node") in ("object_subgraph", "summarize_execution")]

        assert final["is_completed"] is True
        assert len(mid_run) == 3
        assert all(v["is_completed"] is False for v in mid_run)

    @pytest.mark.asyncio
    async def test_dependency_redirect(self):
        engine = FakeEngine({
            "chat_filter": PLATFORM,
            "intent_classifier": _classification(
                [intent("object", "create_object", "contact"), intent("application", "create_application", "crm")],
                deps=[(0, 1)],
            ),
            "application_spec": {"app_name": "crm"},
            "object_spec": {"object_name": "contact", "fields": []},
        })
        client = FakeClient()
        final = await _run(_graph(engine, client), "contact object inside a new crm app")

        assert final["processed_intents"] == [1, 0]
        assert client.calls == [("application", "create", "crm"), ("object", "create", "contact")]

    @pytest.mark.asyncio
    async def test_cycle_rejected(self):
        engine = FakeEngine({
            "chat_filter": PLATFORM,
            "intent_classifier": _classification(
                [intent("object", "create_object", "a"), intent("object", "create_object", "b")],
                deps=[(0, 1), (1, 0)],
            ),
        })
        client = FakeClient()
        final = await _run(_graph(engine, client), "a and b need each other")

        assert final["current_node"] == "handle_error"
        assert "Circular dependency detected between intents 0 and 1" in final["error"]
        assert len(engine.calls_for("intent_classifier")) == 1
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_classification_retry_ceiling(self):
        engine = FakeEngine({"chat_filter": PLATFORM, "intent_classifier": None})
        final = await _run(_graph(engine, max_retry=3), "do something")

        assert len(engine.calls_for("intent_classifier")) == 3
        assert final["retry_count"] == 3
        assert final["current_node"] == "handle_error"
        assert final["error"] == (
            f"{MAX_RETRY_MESSAGE}: Intent classification failed: No tool calls found in LLM response"
        )

    @pytest.mark.asyncio
    async def test_failing_intents_all_processed(self):
        class ExplodingGraph:
            async def ainvoke(self, state, config=None):
                raise RuntimeError("inner graph crashed")

        names = ["a", "b", "c"]
        engine = FakeEngine({
            "chat_filter": PLATFORM,
            "intent_classifier": _classification(
                [intent("application", "create_application", n) for n in names]
            ),
        })
        dispatcher = DomainDispatcher()
        dispatcher.register(SubgraphWrapper(ApplicationSubgraphHandler(), ExplodingGraph()))
        final = await _run(_graph(engine, dispatcher=dispatcher), "three apps")

        assert final["current_node"] == "handle_success"
        assert final["error"] is None
        assert sorted(final["processed_intents"]) == [0, 1, 2]
        assert [e["intent_index"] for e in final["errors"]] == [0, 1, 2]
        assert all("inner graph crashed" in e["error_message"] for e in final["errors"])
        assert "3 failed" in final["summary"]

    @pytest.mark.asyncio
    async def test_failed_intent_does_not_leak(self):
        engine = FakeEngine({
            "chat_filter": PLATFORM,
            "intent_classifier": _classification(
                [intent("object", "create_object", "a"), intent("object", "create_object", "b")]
            ),
            "object_spec": [
                {"object_name": "a", "fields": [{"name": "guid", "type_hint": "text"}]},
                {"object_name": "b", "fields": [{"name": "title", "type_hint": "text"}]},
            ],
        })
        client = FakeClient()
        final = await _run(_graph(engine, client), "objects a and b")

        assert final["processed_intents"] == [0, 1]
        [err] = final["errors"]
        assert err["intent_index"] == 0
        assert "generated by the platform" in err["error_message"]
        statuses = [(r["intent_index"], r["status"]) for r in final["object_results"]]
        assert statuses == [(0, "failed"), (1, "success")]
        second = final["object_results"][1]["result"]
        assert second["object_spec"]["object_name"] == "b"
        assert second["error"] is None
        assert client.calls == [("object", "create", "b"), ("field", "create", "title")]

    @pytest.mark.asyncio
    async def test_session_continuity(self):
        engine = FakeEngine({
            "chat_filter": PLATFORM,
            "intent_classifier": [
                _classification([intent("application", "create_application", "crm")]),
                _classification([intent("object", "manipulate_object_fields", "account")]),
            ],
            "application_spec": {"app_name": "crm", "objects": ["account"]},
            "field_spec": {"object_name": "account", "fields": [{"name": "phone", "type_hint": "phone"}]},
        })
        graph = _graph(engine, FakeClient())

        first = await _run(graph, "create crm with account")
        assert first["processed_intents"] == [0]

        second = await _run(graph, "add a phone field to account")

        classify_prompts = [c["system"] for c in engine.calls_for("intent_classifier")]
        assert "Execution context" not in classify_prompts[0]
        assert "application: crm (id: crm)" in classify_prompts[1]
        assert "object: account (id: account)" in classify_prompts[1]

        assert second["processed_intents"] == [0]
        assert second["application_results"] == []
        assert len(second["object_results"]) == 1
        assert second["retry_count"] == 0
        assert len(second["created_entities"]) == 2
        assert len(second["messages"]) > len(first["messages"])
