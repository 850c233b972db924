from typing import TYPE_CHECKING

from networkx import generate_network_text

if TYPE_CHECKING:  # pragma: no cover
    from networkx import DiGraph

    from .task import TaskKey


class Topology:
    def __init__(
        self, *, digraph: "DiGraph", order: list["TaskKey"], external: set["TaskKey"]
    ) -> None:
        self.digraph = digraph
        self.order = order
        self.external = external

    def __str__(self) -> str:
        return "\n".join(generate_network_text(self.digraph, vertical_chains=True))
