"""Canonical edge-routing decisions shared by every workflow's routers.

Every router in the system applies the same order:

  1. error set      → "retry" while retry_count < max_retry_count, else "error".
                      A stage that produced its artifact *and* set an error
                      failed validation, which is not transient: "error".
  2. artifact ok    → the happy-path label.
  3. artifact gone  → "retry" while under the ceiling, else "error".

route_execution() is the variant for execution stages, where the artifact is
an ExecutionResult and partial progress is retried instead of failed.

These helpers return labels; each workflow wraps them in small @routes
functions so the builder can check the label vocabulary.
"""

from __future__ import annotations

from typing import Any


def can_retry(state: dict, max_retry_count: int) -> bool:
    return (state.get("retry_count") or 0) < max_retry_count


def route_stage(
    state: dict,
    artifact_key: str,
    next_label: str,
    max_retry_count: int,
    validation: bool = False,
) -> str:
    """Decide the successor of an extraction / design stage.

    Args:
        artifact_key: state field the stage produces (e.g. "application_spec").
        next_label:   label for the happy path.
        validation:   the stage only validates; any error is non-transient.
    """
    artifact: Any = state.get(artifact_key)
    if state.get("error"):
        if validation or artifact:
            return "error"
        return "retry" if can_retry(state, max_retry_count) else "error"
    if artifact:
        return next_label
    return "retry" if can_retry(state, max_retry_count) else "error"


def completed_steps(state: dict) -> list[dict]:
    return list((state.get("execution_result") or {}).get("completed_steps") or [])


def route_execution(state: dict, max_retry_count: int) -> str:
    """Decide the successor of an execution stage.

      success                          → "success"
      failed, zero completed steps     → "error"   (total failure)
      partial / failed with progress   → "retry"   (resume remaining steps)
      no result                        → "retry"
    Retry labels collapse to "error" once the ceiling is reached.
    """
    result = state.get("execution_result")
    retry = "retry" if can_retry(state, max_retry_count) else "error"

    if not result:
        return retry

    status = result.get("status")
    if status == "success" and not state.get("error"):
        return "success"
    if status == "failed" and not completed_steps(state):
        return "error"
    return retry
