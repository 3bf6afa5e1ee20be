"""Graph orchestration engine for the NFlow platform agent.

Entry points (import from their modules):
    agent.coordinator.build_coordinator_graph(engine, dispatcher, checkpointer=None)
    agent.coordinator.create_dispatcher(engine, client, settings)

Exported here (no graph-building imports, so persistence.hooks can import
agent.metrics without a cycle):
    State       — CoordinatorState, ApplicationState, ObjectState, RESET, apply_patch
    Dispatcher  — DomainDispatcher
    Sub-graphs  — SubgraphHandler, SubgraphWrapper, ValidationResult
"""

from nflow_agent.agent.registry import DomainDispatcher
from nflow_agent.agent.state import (
    RESET,
    ApplicationState,
    CoordinatorState,
    ObjectState,
    apply_patch,
)
from nflow_agent.agent.subgraph import SubgraphHandler, SubgraphWrapper, ValidationResult

__all__ = [
    "RESET",
    "ApplicationState",
    "CoordinatorState",
    "ObjectState",
    "apply_patch",
    "DomainDispatcher",
    "SubgraphHandler",
    "SubgraphWrapper",
    "ValidationResult",
]
