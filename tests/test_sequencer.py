"""Intent sequencing, dependency checks and the domain dispatcher.

Verifies:
  validate_classification
  1. Empty/missing classification is rejected
  2. Unknown domain-intent combinations are rejected
  3. Out-of-range and self dependencies are rejected
  4. A dependency cycle is reported with the edge that closes it
  5. An acyclic classification passes

  decide / process_next_intent
  6.  Ready intent with a registered domain → dispatch
  7.  Unprocessed dependency → redirect to the dependency
  8.  Index past the end with unprocessed intents → skip back (wrap-around)
  9.  All intents processed → done
  10. Unregistered domain → passthrough (marked processed, index advances)
  11. Router labels follow the decision; no intents → error
  12. Two dependent intents are visited dependency-first and each exactly once

  DomainDispatcher
  13. Registration yields node names and labels; duplicates are rejected
  14. Unknown domains raise KeyError
"""

from __future__ import annotations

import pytest

from nflow_agent.agent.domains.application import ApplicationSubgraphHandler
from nflow_agent.agent.domains.object import ObjectSubgraphHandler
from nflow_agent.agent.registry import DomainDispatcher
from nflow_agent.agent.sequencer import (
    NO_INTENTS,
    decide,
    find_cycle,
    make_process_next_intent_node,
    make_route_after_next_intent,
    validate_classification,
)
from nflow_agent.agent.state import CoordinatorState, apply_patch
from nflow_agent.agent.subgraph import SubgraphWrapper

from fakes import coordinator_state, intent


def _dep(dependent: int, depends_on: int) -> dict:
    return {"dependent_intent_index": dependent, "depends_on_intent_index": depends_on, "reason": "needs it"}


def _dispatcher() -> DomainDispatcher:
    dispatcher = DomainDispatcher()
    dispatcher.register(SubgraphWrapper(ApplicationSubgraphHandler(), graph=None))
    dispatcher.register(SubgraphWrapper(ObjectSubgraphHandler(), graph=None))
    return dispatcher


# ---------------------------------------------------------------------------
# validate_classification
# ---------------------------------------------------------------------------


class TestValidateClassification:
    def test_missing(self):
        assert validate_classification(None) == ["No classified intent to validate"]
        assert validate_classification({"intents": []}) == ["Empty intents array in classified intent"]

    def test_invalid_combination(self):
        errors = validate_classification({"intents": [intent("object", "create_application")]})
        assert errors == ["Invalid domain-intent combination: object-create_application"]

    def test_bad_dependency_indices(self):
        classified = {
            "intents": [intent("application", "create_application", "crm")],
            "dependencies": [_dep(0, 0), _dep(0, 5)],
        }
        errors = validate_classification(classified)
        assert "Intent cannot depend on itself: 0" in errors
        assert "Invalid dependency index: 5" in errors

    def test_cycle_detected(self):
        classified = {
            "intents": [intent("object", "create_object", "a", 0), intent("object", "create_object", "b", 1)],
            "dependencies": [_dep(0, 1), _dep(1, 0)],
        }
        assert validate_classification(classified) == ["Circular dependency detected between intents 0 and 1"]

    def test_longer_cycle(self):
        deps = [_dep(0, 1), _dep(1, 2), _dep(2, 0)]
        assert find_cycle(deps) == (0, 1)

    def test_acyclic_passes(self):
        classified = {
            "intents": [
                intent("application", "create_application", "crm", 0),
                intent("object", "create_object", "contact", 1),
                intent("object", "manipulate_object_fields", "contact", 2),
            ],
            "dependencies": [_dep(1, 0), _dep(2, 1), _dep(2, 0)],
        }
        assert validate_classification(classified) == []
        assert find_cycle(classified["dependencies"]) is None


# ---------------------------------------------------------------------------
# decide / process_next_intent
# ---------------------------------------------------------------------------


class TestDecide:
    def test_dispatch(self):
        dispatcher = _dispatcher()
        state = coordinator_state([intent("object", "create_object", "contact")])
        decision = decide(state, dispatcher.is_domain_supported)
        assert (decision.action, decision.index, decision.domain) == ("dispatch", 0, "object")

    def test_redirect_to_dependency(self):
        state = coordinator_state(
            [intent("object", "create_object", "contact", 0), intent("application", "create_application", "crm", 1)]
        )
        state["classified_intent"]["dependencies"] = [_dep(0, 1)]
        decision = decide(state, _dispatcher().is_domain_supported)
        assert (decision.action, decision.index) == ("redirect", 1)

    def test_skip_wraps_around(self):
        intents = [intent("object", "create_object", "a", 0), intent("object", "create_object", "b", 1)]
        state = coordinator_state(intents, index=2, processed_intents=[1])
        decision = decide(state, _dispatcher().is_domain_supported)
        assert (decision.action, decision.index) == ("skip", 0)

    def test_done(self):
        intents = [intent("object", "create_object", "a", 0)]
        state = coordinator_state(intents, index=1, processed_intents=[0])
        assert decide(state, _dispatcher().is_domain_supported).action == "done"

    def test_no_intents(self):
        state = coordinator_state([])
        assert decide(state, _dispatcher().is_domain_supported).action == "error"

    def test_passthrough_node_patch(self):
        dispatcher = _dispatcher()
        state = coordinator_state([intent("layout", "create_layout", "main")])
        patch = make_process_next_intent_node(dispatcher)(state)
        assert patch["processed_intents"] == [0]
        assert patch["current_intent_index"] == 1
        assert "not supported" in patch["messages"][0].content

    def test_no_intents_node_sets_error(self):
        patch = make_process_next_intent_node(_dispatcher())(coordinator_state([]))
        assert patch["error"] == NO_INTENTS


class TestRouteAfterNextIntent:
    def test_labels_include_domains(self):
        router = make_route_after_next_intent(_dispatcher())
        assert router.labels == frozenset(
            {"next_intent", "summarize", "error", "application_domain", "object_domain"}
        )

    def test_routes(self):
        dispatcher = _dispatcher()
        router = make_route_after_next_intent(dispatcher)
        intents = [intent("application", "create_application", "crm", 0), intent("layout", "create_layout", "x", 1)]

        assert router(coordinator_state(intents)) == "application_domain"
        assert router(coordinator_state(intents, index=1, processed_intents=[0])) == "next_intent"
        assert router(coordinator_state(intents, index=2, processed_intents=[0, 1])) == "summarize"
        assert router(coordinator_state([])) == "error"
        assert router(coordinator_state(intents, error="boom")) == "error"

    def test_dependent_pair_is_visited_dependency_first(self):
        """Drive the node/router loop by hand, standing in for the domain wrappers."""
        dispatcher = _dispatcher()
        node = make_process_next_intent_node(dispatcher)
        router = make_route_after_next_intent(dispatcher)
        intents = [intent("object", "create_object", "contact", 0), intent("application", "create_application", "crm", 1)]
        state = coordinator_state(intents)
        state["classified_intent"]["dependencies"] = [_dep(0, 1)]

        visited = []
        for _ in range(10):
            state = apply_patch(CoordinatorState, state, node(state))
            label = router(state)
            if label == "summarize":
                break
            if label.endswith("_domain"):
                index = state["current_intent_index"]
                visited.append(index)
                state = apply_patch(CoordinatorState, state, {
                    "processed_intents": [index],
                    "current_intent_index": index + 1,
                })
        assert visited == [1, 0]
        assert state["processed_intents"] == [1, 0]


# ---------------------------------------------------------------------------
# DomainDispatcher
# ---------------------------------------------------------------------------


class TestDispatcher:
    def test_registration(self):
        dispatcher = _dispatcher()
        assert [e.domain for e in dispatcher.entries()] == ["application", "object"]
        assert dispatcher.is_domain_supported("application")
        assert not dispatcher.is_domain_supported("layout")
        entry = dispatcher.get("object")
        assert (entry.node_name, entry.label) == ("object_subgraph", "object_domain")
        assert dispatcher.labels() == ("application_domain", "object_domain")

    def test_duplicate_rejected(self):
        dispatcher = _dispatcher()
        with pytest.raises(ValueError, match="already registered"):
            dispatcher.register(SubgraphWrapper(ObjectSubgraphHandler(), graph=None))

    def test_unknown_domain(self):
        with pytest.raises(KeyError):
            _dispatcher().get("flow")
