"""DomainDispatcher — domain tag → sub-graph wrapper, populated at startup.

The coordinator asks the dispatcher two questions:

  is_domain_supported("layout")  → False  (sequencer passes the intent through)
  label_for("object")            → "object_domain"  (edge label to the wrapper node)

Each registered wrapper becomes one coordinator node (entry.node_name) and
one edge label (entry.label) out of process_next_intent.

Usage::

    dispatcher = DomainDispatcher()
    dispatcher.register(SubgraphWrapper(ApplicationSubgraphHandler(), app_graph))
    dispatcher.register(SubgraphWrapper(ObjectSubgraphHandler(), object_graph))
    dispatcher.labels()   # ("application_domain", "object_domain")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nflow_agent.agent.subgraph import SubgraphWrapper


@dataclass(frozen=True)
class DispatchEntry:
    """A single registered domain.

    Fields:
        domain:    Domain tag as produced by classification ("application").
        wrapper:   SubgraphWrapper that runs the domain's sub-graph.
        node_name: Coordinator node name for the wrapper ("application_subgraph").
        label:     Edge label routed to that node ("application_domain").
    """

    domain: str
    wrapper: SubgraphWrapper
    node_name: str
    label: str


class DomainDispatcher:
    """Fixed registry of domain sub-graphs, queried by domain tag."""

    def __init__(self) -> None:
        self._entries: dict[str, DispatchEntry] = {}

    def register(self, wrapper: SubgraphWrapper) -> DispatchEntry:
        domain = wrapper.domain
        if domain in self._entries:
            raise ValueError(f"Domain {domain!r} is already registered")
        entry = DispatchEntry(
            domain=domain,
            wrapper=wrapper,
            node_name=f"{domain}_subgraph",
            label=f"{domain}_domain",
        )
        self._entries[domain] = entry
        return entry

    def is_domain_supported(self, domain: str) -> bool:
        return domain in self._entries

    def get(self, domain: str) -> DispatchEntry:
        try:
            return self._entries[domain]
        except KeyError:
            raise KeyError(f"No sub-graph registered for domain {domain!r}") from None

    def label_for(self, domain: str) -> str:
        return self.get(domain).label

    def labels(self) -> tuple[str, ...]:
        return tuple(e.label for e in self._entries.values())

    def entries(self) -> list[DispatchEntry]:
        return list(self._entries.values())
