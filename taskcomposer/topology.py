from typing import TYPE_CHECKING

import networkx as nx
from networkx import generate_network_text

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Sequence

    from networkx import DiGraph

    from .resolver import TaskStep


class Topology:
    """
    Graph view of a resolved plan: one node per task name, with an edge from each
    task to every dependency it waits on. ``order`` lists dependencies first.
    """

    def __init__(self, *, digraph: "DiGraph", order: list[str], roots: list[str]) -> None:
        self.digraph = digraph
        self.order = order
        self.roots = roots

    @classmethod
    def from_steps(cls, steps: "Sequence[TaskStep]") -> "Topology":
        digraph = nx.DiGraph()
        anonymous: dict[int, str] = {}

        def node_for(step: "TaskStep") -> str:
            if not step.task.anonymous:
                return step.name

            # inline functions share names like "<lambda>"; keep them apart
            key = id(step.task)
            if key not in anonymous:
                anonymous[key] = f"{step.name} #{len(anonymous) + 1}"
            return anonymous[key]

        def visit(step: "TaskStep") -> str:
            node = node_for(step)
            digraph.add_node(node, flow=step.task.options.flow.value)
            for dependency in step.dependencies:
                digraph.add_edge(node, visit(dependency))
            return node

        roots = list(dict.fromkeys(visit(step) for step in steps))
        order = list(reversed(list(nx.topological_sort(digraph))))
        return cls(digraph=digraph, order=order, roots=roots)

    def dependencies_of(self, name: str) -> list[str]:
        return list(self.digraph.successors(name))

    def __str__(self) -> str:
        return "\n".join(
            generate_network_text(self.digraph, sources=self.roots, vertical_chains=True)
        )
