"""Terminal and retry handler nodes shared by every workflow.

  handle_success — terminal: is_completed=True, error cleared, completion note.
  handle_error   — terminal: is_completed=True, last error kept, failure note.
  handle_retry   — non-terminal: retry_count += 1; at the ceiling it writes
                   the fatal "Maximum retry attempts exceeded" error (the
                   retry router then sends the run to handle_error), below it
                   clears the error so the resume target starts clean.

The terminal handlers are pure functions of the state they receive: calling
either twice on the same state yields the same patch.
"""

from __future__ import annotations

import logging
from typing import Callable

from nflow_agent.agent.state import RESET
from nflow_agent.reasoning import Message

logger = logging.getLogger("nflow_agent.agent.handlers")

MAX_RETRY_MESSAGE = "Maximum retry attempts exceeded"


def make_success_handler(workflow: str, message: str | Callable[[dict], str] | None = None) -> Callable:
    """Return the handle_success node for *workflow*.

    *message* is either a fixed completion note or a function of the state.
    """

    def handle_success(state: dict) -> dict:
        note = message(state) if callable(message) else (message or f"{workflow} completed successfully")
        logger.info("[%s] completed", workflow.upper())
        return {
            "is_completed": True,
            "error": RESET,
            "current_node": "handle_success",
            "messages": [Message(role="assistant", content=note)],
        }

    return handle_success


def make_error_handler(workflow: str) -> Callable:
    """Return the handle_error node for *workflow*."""

    def handle_error(state: dict) -> dict:
        error = state.get("error") or "Unknown error"
        logger.warning("[%s] failed: %s", workflow.upper(), error)
        return {
            "is_completed": True,
            "error": error,
            "current_node": "handle_error",
            "messages": [Message(role="assistant", content=f"{workflow} failed: {error}")],
        }

    return handle_error


def make_retry_handler(workflow: str, max_retry_count: int) -> Callable:
    """Return the handle_retry node for *workflow* with the given ceiling."""

    def handle_retry(state: dict) -> dict:
        retry_count = (state.get("retry_count") or 0) + 1
        logger.info("[%s] retry attempt %d/%d", workflow.upper(), retry_count, max_retry_count)

        if retry_count >= max_retry_count:
            last = state.get("error")
            error = f"{MAX_RETRY_MESSAGE}: {last}" if last else MAX_RETRY_MESSAGE
            return {
                "retry_count": retry_count,
                "error": error,
                "current_node": "handle_retry",
                "messages": [
                    Message(role="assistant", content=f"{workflow}: max retry attempts exceeded, failing"),
                ],
            }

        return {
            "retry_count": retry_count,
            "error": RESET,
            "current_node": "handle_retry",
            "messages": [
                Message(
                    role="assistant",
                    content=f"Retrying {workflow} (attempt {retry_count}/{max_retry_count})",
                ),
            ],
        }

    return handle_retry
