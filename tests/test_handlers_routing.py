"""Terminal/retry handlers and the canonical routing decisions.

Verifies:
  Handlers
  1. handle_success marks the run complete, clears the error, is idempotent
  2. handle_error keeps the last error, is idempotent
  3. handle_retry increments and clears the error below the ceiling
  4. handle_retry writes the fatal error at the ceiling

  route_stage
  5. artifact present, no error        → next label
  6. error, no artifact, under ceiling → retry
  7. error, no artifact, at ceiling    → error
  8. artifact present and error        → error (validation failure)

  route_execution
  9.  success                          → success
  10. failed with zero completed steps → error
  11. failed with completed steps      → retry
  12. partial                          → retry (error at the ceiling)
  13. no execution result              → retry
"""

from __future__ import annotations

from nflow_agent.agent.handlers import (
    MAX_RETRY_MESSAGE,
    make_error_handler,
    make_retry_handler,
    make_success_handler,
)
from nflow_agent.agent.routing import route_execution, route_stage
from nflow_agent.agent.state import RESET


def _step(i: int) -> dict:
    return {"type": "create_field", "step_index": i, "entity_id": f"f{i}", "entity_name": f"f{i}"}


class TestHandlers:
    def test_success_handler(self):
        handler = make_success_handler("object", lambda s: f"done {s['name']}")
        state = {"name": "contact", "error": "stale"}
        patch = handler(state)
        assert patch["is_completed"] is True
        assert patch["error"] is RESET
        assert patch["current_node"] == "handle_success"
        assert patch["messages"][0].content == "done contact"
        assert handler(state) == patch

    def test_success_handler_default_note(self):
        patch = make_success_handler("application")({})
        assert patch["messages"][0].content == "application completed successfully"

    def test_error_handler_keeps_error(self):
        handler = make_error_handler("coordinator")
        state = {"error": "Classification validation failed: x"}
        patch = handler(state)
        assert patch["is_completed"] is True
        assert patch["error"] == "Classification validation failed: x"
        assert patch["current_node"] == "handle_error"
        assert handler(state) == patch

    def test_error_handler_without_error(self):
        assert make_error_handler("object")({})["error"] == "Unknown error"

    def test_retry_handler_below_ceiling(self):
        patch = make_retry_handler("object", 3)({"retry_count": 1, "error": "boom"})
        assert patch["retry_count"] == 2
        assert patch["error"] is RESET
        assert patch["current_node"] == "handle_retry"

    def test_retry_handler_at_ceiling(self):
        patch = make_retry_handler("object", 3)({"retry_count": 2, "error": "boom"})
        assert patch["retry_count"] == 3
        assert patch["error"] == f"{MAX_RETRY_MESSAGE}: boom"


# ---------------------------------------------------------------------------
# route_stage
# ---------------------------------------------------------------------------


class TestRouteStage:
    def test_happy_path(self):
        assert route_stage({"spec": {"a": 1}, "error": None}, "spec", "design", 3) == "design"

    def test_extraction_failure_retries(self):
        assert route_stage({"spec": None, "error": "no tool call", "retry_count": 2}, "spec", "design", 3) == "retry"

    def test_extraction_failure_at_ceiling(self):
        assert route_stage({"spec": None, "error": "no tool call", "retry_count": 3}, "spec", "design", 3) == "error"

    def test_validation_failure_is_not_retried(self):
        state = {"spec": {"app_name": ""}, "error": "Invalid application specification", "retry_count": 0}
        assert route_stage(state, "spec", "design", 3) == "error"

    def test_missing_artifact_without_error_retries(self):
        assert route_stage({"spec": None, "error": None}, "spec", "design", 1) == "retry"

    def test_validation_only_stage(self):
        state = {"spec": None, "error": "bad", "retry_count": 0}
        assert route_stage(state, "spec", "next", 3, validation=True) == "error"


# ---------------------------------------------------------------------------
# route_execution
# ---------------------------------------------------------------------------


class TestRouteExecution:
    def test_success(self):
        state = {"execution_result": {"status": "success", "completed_steps": [_step(0)]}, "error": None}
        assert route_execution(state, 3) == "success"

    def test_total_failure_goes_to_error(self):
        state = {"execution_result": {"status": "failed", "completed_steps": []}, "error": "rejected"}
        assert route_execution(state, 3) == "error"

    def test_failure_with_progress_retries(self):
        state = {"execution_result": {"status": "failed", "completed_steps": [_step(0)]}, "error": "rejected"}
        assert route_execution(state, 3) == "retry"

    def test_partial_retries(self):
        state = {
            "execution_result": {"status": "partial", "completed_steps": [_step(0)]},
            "error": "one field rejected",
            "retry_count": 1,
        }
        assert route_execution(state, 3) == "retry"

    def test_partial_at_ceiling(self):
        state = {
            "execution_result": {"status": "partial", "completed_steps": [_step(0)]},
            "error": "one field rejected",
            "retry_count": 3,
        }
        assert route_execution(state, 3) == "error"

    def test_no_result_retries(self):
        assert route_execution({"execution_result": None, "error": "missing"}, 2) == "retry"
