"""Persistence layer: checkpoint stores and node lifecycle hooks.

Exports:
  make_checkpointer(dsn)      async context manager, yields AsyncPostgresSaver
                              with list_thread_ids() / thread_exists() attached
  make_memory_checkpointer()  MemorySaver with the same two helpers
  guard_node(name, fn)        timing, lifecycle events and defect containment
"""

from nflow_agent.persistence.checkpointer import make_checkpointer, make_memory_checkpointer
from nflow_agent.persistence.hooks import guard_node

__all__ = [
    "make_checkpointer",
    "make_memory_checkpointer",
    "guard_node",
]
