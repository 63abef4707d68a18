"""Pipeline graph and execution plan types."""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from liveflow.types.base import LiveFlowBaseModel


class DependencyDAG(BaseModel):
    """Directed graph of table dependencies.

    Each node maps to the list of nodes it reads from. Node insertion order
    is the declaration order of the pipeline and is used to break ties, so
    orderings derived from the graph are deterministic.

    Attributes:
        adjacency_list: Maps each node to its list of dependencies
    """
    adjacency_list: Dict[str, List[str]] = Field(default_factory=dict)

    def add_node(self, node: str) -> None:
        """Add a node to the DAG without dependencies.

        Args:
            node: Name of the node to add
        """
        if node not in self.adjacency_list:
            self.adjacency_list[node] = []

    def add_edges(self, from_node: str, to_nodes: Iterable[str]) -> None:
        """Add dependencies for a node.

        Args:
            from_node: The node that has dependencies
            to_nodes: Nodes that are depended upon
        """
        self.add_node(from_node)
        for node in to_nodes:
            if node not in self.adjacency_list[from_node]:
                self.adjacency_list[from_node].append(node)

    def get_dependencies(self, node: str) -> List[str]:
        return self.adjacency_list.get(node, [])

    def get_all_dependencies(self, node: str) -> Set[str]:
        """Get all dependencies (direct and transitive) for a node."""
        all_deps: Set[str] = set()
        to_process = list(self.get_dependencies(node))

        while to_process:
            dep = to_process.pop()
            if dep not in all_deps:
                all_deps.add(dep)
                to_process.extend(self.get_dependencies(dep))

        return all_deps

    def get_dependents(self, node: str) -> List[str]:
        """Nodes that directly read from ``node``, in declaration order."""
        return [n for n, deps in self.adjacency_list.items() if node in deps]

    def get_all_dependents(self, node: str) -> Set[str]:
        """Get all dependents (direct and transitive) for a node."""
        all_dependents: Set[str] = set()
        to_process = self.get_dependents(node)

        while to_process:
            dep = to_process.pop()
            if dep not in all_dependents:
                all_dependents.add(dep)
                to_process.extend(self.get_dependents(dep))

        return all_dependents

    def find_cycle(self) -> Optional[List[str]]:
        """Return one cycle as a closed path (first node repeated last), or None.

        Uses a three-colour DFS; a back edge to a GRAY node closes the cycle.
        """
        WHITE, GRAY, BLACK = 0, 1, 2
        color: Dict[str, int] = defaultdict(lambda: WHITE)
        path: List[str] = []

        def visit(node: str) -> Optional[List[str]]:
            color[node] = GRAY
            path.append(node)
            for neighbor in self.adjacency_list.get(node, []):
                if color[neighbor] == GRAY:
                    return path[path.index(neighbor):] + [neighbor]
                if color[neighbor] == WHITE:
                    cycle = visit(neighbor)
                    if cycle:
                        return cycle
            path.pop()
            color[node] = BLACK
            return None

        for node in self.adjacency_list:
            if color[node] == WHITE:
                cycle = visit(node)
                if cycle:
                    return cycle
        return None

    def has_cycles(self) -> bool:
        return self.find_cycle() is not None

    def topological_sort(self) -> List[str]:
        """Return nodes in dependency order using Kahn's algorithm.

        Among nodes that are ready at the same time the one declared first
        comes first.

        Raises:
            ValueError: If the graph contains cycles
        """
        if self.has_cycles():
            raise ValueError("Cannot perform topological sort on a graph with cycles")

        in_degree = {node: len(deps) for node, deps in self.adjacency_list.items()}
        position = {node: i for i, node in enumerate(self.adjacency_list)}
        ready = [node for node in self.adjacency_list if in_degree[node] == 0]
        result: List[str] = []

        while ready:
            node = ready.pop(0)
            result.append(node)
            for dependent in self.get_dependents(node):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.append(dependent)
            ready.sort(key=position.__getitem__)

        return result

    def get_execution_stages(self) -> List[List[str]]:
        """Group nodes into stages; nodes within a stage can run in parallel.

        Raises:
            ValueError: If the graph contains cycles
        """
        if self.has_cycles():
            raise ValueError("Cannot create execution stages for a graph with cycles")

        in_degree = {node: len(deps) for node, deps in self.adjacency_list.items()}
        processed: Set[str] = set()
        stages: List[List[str]] = []

        while len(processed) < len(self.adjacency_list):
            current_stage = [
                node for node in self.adjacency_list
                if in_degree[node] == 0 and node not in processed
            ]
            if not current_stage:
                raise ValueError("Could not create execution stages - possible hidden cycle")

            stages.append(current_stage)
            for node in current_stage:
                processed.add(node)
                for dependent in self.get_dependents(node):
                    in_degree[dependent] -= 1

        return stages

    def get_subgraph(self, nodes: Iterable[str]) -> "DependencyDAG":
        """Subgraph restricted to ``nodes``, keeping declaration order."""
        keep = set(nodes)
        subgraph = DependencyDAG()
        for node, deps in self.adjacency_list.items():
            if node in keep:
                subgraph.add_edges(node, [d for d in deps if d in keep])
        return subgraph


class ExecutionStage(LiveFlowBaseModel):
    """Tables that can be materialized in parallel.

    Attributes:
        stage: Stage number (1-based) indicating execution order
        tables: Names of the tables in the stage
    """
    stage: int
    tables: List[str]


class ExecutionPlan(LiveFlowBaseModel):
    """Ordered stages for one pipeline run, with the graph they came from."""
    pipeline_name: str
    stages: List[ExecutionStage]
    dependency_graph: Dict[str, List[str]]

    @property
    def table_names(self) -> List[str]:
        return [name for stage in self.stages for name in stage.tables]

    def to_dict(self) -> dict:
        return {
            "pipeline_name": self.pipeline_name,
            "stages": [stage.to_dict() for stage in self.stages],
            "dependency_graph": self.dependency_graph,
        }


__all__ = [
    "DependencyDAG",
    "ExecutionStage",
    "ExecutionPlan",
]
