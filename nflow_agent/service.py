"""Run invocation surface: one request in, one structured result out.

    result = await service.run({"message": "Create a CRM app", "sessionId": "abc"})
    # {"success": True, "message": "...", "data": {...}}

run() never raises.  Every outcome (a casual-chat reply, a completed
request, a graph that ended at handle_error, a deadline overrun or an
unexpected defect) comes back as {success, message, data}.

The same sessionId continues the same LangGraph thread, so session-scoped
fields (messages, created_entities) carry over between requests.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from nflow_agent.agent.coordinator import build_coordinator_graph, create_dispatcher
from nflow_agent.agent.metrics import RunMetrics
from nflow_agent.agent.settings import AgentSettings
from nflow_agent.agent.state import CoordinatorState, initial_state, strip_reset
from nflow_agent.client import NFlowClient, Settings
from nflow_agent.persistence import make_checkpointer, make_memory_checkpointer
from nflow_agent.reasoning import Message, ReasoningSettings, create_engine

logger = logging.getLogger("nflow_agent.service")


def _failure(message: str, **data: Any) -> dict:
    return {"success": False, "message": message, "data": {"error": message, **data}}


class CoordinatorService:
    """Owns a compiled coordinator graph and turns its final state into caller results."""

    def __init__(
        self,
        graph: Any,
        settings: AgentSettings | None = None,
        metrics: RunMetrics | None = None,
    ) -> None:
        self.graph = graph
        self.settings = settings or AgentSettings()
        self.metrics = metrics or RunMetrics()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    @asynccontextmanager
    async def from_env(cls) -> AsyncGenerator[CoordinatorService, None]:
        """Build engine, platform client, sub-graphs and checkpointer from the environment.

        POSTGRES_DSN selects the Postgres checkpointer; without it sessions
        live in process memory.
        """
        reasoning_settings = ReasoningSettings.from_env()
        agent_settings = AgentSettings.from_env()
        client = NFlowClient(Settings.from_env())
        engine = create_engine(reasoning_settings)
        metrics = RunMetrics()

        dispatcher = create_dispatcher(
            engine, client, agent_settings,
            emit_event=metrics.record, temperature=reasoning_settings.temperature,
        )

        def _build(checkpointer: Any) -> CoordinatorService:
            graph = build_coordinator_graph(
                engine, dispatcher,
                checkpointer=checkpointer,
                max_retry=agent_settings.coordinator_max_retry,
                emit_event=metrics.record,
                temperature=reasoning_settings.temperature,
            )
            return cls(graph, agent_settings, metrics)

        logger.info(
            "Starting NFlow agent | engine=%s | app retry=%d object retry=%d coordinator retry=%d",
            engine.model_id,
            agent_settings.app_max_retry,
            agent_settings.object_max_retry,
            agent_settings.coordinator_max_retry,
        )
        try:
            dsn = os.getenv("POSTGRES_DSN")
            if dsn:
                async with make_checkpointer(dsn) as checkpointer:
                    yield _build(checkpointer)
            else:
                yield _build(make_memory_checkpointer())
        finally:
            await client.close()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, request: dict) -> dict:
        """Process one request. Never raises."""
        try:
            message = (request.get("message") or "").strip()
            session_id = request.get("sessionId") or request.get("session_id") or str(uuid.uuid4())
        except AttributeError:
            return _failure("Request must be an object with message and sessionId")
        if not message:
            return _failure("Message is required", session_id=request.get("sessionId"))

        config = {
            "configurable": {"thread_id": session_id},
            "recursion_limit": self.settings.recursion_limit,
        }
        initial = initial_state(
            CoordinatorState,
            original_message=message,
            chat_session_id=session_id,
            messages=[Message(role="user", content=message)],
        )
        logger.info("Run %s: %r", session_id, message[:80])

        try:
            final = await asyncio.wait_for(
                self.graph.ainvoke(initial, config=config),
                timeout=self.settings.run_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("Run %s exceeded %.0fs deadline", session_id, self.settings.run_timeout_seconds)
            last = await self._last_state(config)
            return _failure(
                f"Run exceeded the {self.settings.run_timeout_seconds:g}s deadline",
                session_id=session_id,
                current_node=last.get("current_node"),
                retry_count=last.get("retry_count", 0),
                node_trace=self.metrics.pop(session_id),
            )
        except Exception as exc:
            logger.exception("Run %s failed", session_id)
            return _failure(
                f"Unexpected error: {exc}",
                session_id=session_id,
                node_trace=self.metrics.pop(session_id),
            )

        try:
            return self._to_result(session_id, strip_reset(dict(final)))
        except Exception as exc:
            logger.exception("Run %s: could not build result", session_id)
            return _failure(f"Unexpected error: {exc}", session_id=session_id)

    def _to_result(self, session_id: str, state: dict) -> dict:
        trace = self.metrics.pop(session_id)
        if state.get("error"):
            error = state["error"]
            return {
                "success": False,
                "message": error,
                "data": {
                    "error": error,
                    "session_id": session_id,
                    "current_node": state.get("current_node"),
                    "retry_count": state.get("retry_count", 0),
                    "classified_intent": state.get("classified_intent"),
                    "errors": state.get("errors") or [],
                    "node_trace": trace,
                },
            }

        if state.get("chat_reply"):
            return {
                "success": True,
                "message": state["chat_reply"],
                "data": {"session_id": session_id, "type": "chat", "node_trace": trace},
            }

        return {
            "success": True,
            "message": state.get("summary") or "Request completed",
            "data": {
                "session_id": session_id,
                "type": "platform",
                "classified_intent": state.get("classified_intent"),
                "processed_intents": state.get("processed_intents") or [],
                "application_results": state.get("application_results") or [],
                "object_results": state.get("object_results") or [],
                "errors": state.get("errors") or [],
                "created_entities": state.get("created_entities") or [],
                "summary": state.get("summary"),
                "node_trace": trace,
            },
        }

    async def _last_state(self, config: dict) -> dict:
        try:
            snapshot = await self.graph.aget_state(config)
        except Exception:
            logger.warning("Could not read last checkpoint", exc_info=True)
            return {}
        return dict(snapshot.values or {})

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def list_sessions(self) -> list[dict]:
        """Checkpointed state of every session the checkpointer knows about."""
        sessions = []
        for thread_id in await self.graph.checkpointer.list_thread_ids():
            state = await self.get_session(thread_id)
            if state is not None:
                sessions.append(state)
        return sessions

    async def get_session(self, session_id: str) -> dict | None:
        """Checkpointed state of a session without advancing it, or None if unknown."""
        if not await self.graph.checkpointer.thread_exists(session_id):
            return None
        snapshot = await self.graph.aget_state({"configurable": {"thread_id": session_id}})
        values = dict(snapshot.values or {})
        if not values:
            return None
        state = strip_reset(values)
        return {
            "session_id": session_id,
            "is_completed": bool(state.get("is_completed")),
            "current_node": state.get("current_node"),
            "error": state.get("error"),
            "summary": state.get("summary"),
            "chat_reply": state.get("chat_reply"),
            "processed_intents": state.get("processed_intents") or [],
            "created_entities": state.get("created_entities") or [],
            "message_count": len(state.get("messages") or []),
        }
