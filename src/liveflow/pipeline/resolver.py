"""Dependency resolution for pipeline definitions.

Builds the "reads from" graph of a pipeline, validates it and derives the
execution order. Everything here is pure: nothing is read or executed.
"""

from typing import List, Optional, Set

from liveflow.common.exceptions import (
    CyclicDependencyError,
    ErrorCode,
    PipelineDefinitionError,
    UndefinedTableError,
)
from liveflow.constants import MaterializationMode, TableKind
from liveflow.logging import get_logger
from liveflow.observability.context import sanitize_extras
from liveflow.pipeline.definition import PipelineDefinition, TableDefinition
from liveflow.pipeline.types import DependencyDAG, ExecutionPlan, ExecutionStage
from liveflow.storage.base import TableStore

logger = get_logger(__name__)


class DependencyResolver:
    """Turns a pipeline definition into a validated dependency graph.

    Attributes:
        pipeline: Pipeline being resolved
    """

    def __init__(self, pipeline: PipelineDefinition):
        self.pipeline = pipeline
        self._dag: Optional[DependencyDAG] = None

    def build_dag(self) -> DependencyDAG:
        """Graph of table -> tables it reads from.

        Raises:
            UndefinedTableError: If a table reads from an undeclared table
            PipelineDefinitionError: If a table streams from a table that is
                replaced on every commit
        """
        if self._dag is not None:
            return self._dag

        dag = DependencyDAG()
        for table in self.pipeline:
            missing = [name for name in table.upstream_names if name not in self.pipeline]
            if missing:
                raise UndefinedTableError(table.name, missing)
            self._check_streaming_reads(table)
            dag.add_edges(table.name, table.upstream_names)

        self._dag = dag
        return dag

    def _check_streaming_reads(self, table: TableDefinition) -> None:
        for ref in table.inputs:
            if not ref.streaming:
                continue
            upstream = self.pipeline.get(ref.name)
            if upstream.materialization_mode != MaterializationMode.INCREMENTAL:
                raise PipelineDefinitionError(
                    f"Table '{table.name}' streams from '{ref.name}', which is replaced on every "
                    f"commit; read it with live('{ref.name}') instead",
                    error_code=ErrorCode.INVALID_STREAMING_READ,
                    details={"table": table.name, "upstream": ref.name},
                )

    def _acyclic_dag(self) -> DependencyDAG:
        dag = self.build_dag()
        cycle = dag.find_cycle()
        if cycle:
            raise CyclicDependencyError(cycle)
        return dag

    def resolve(self) -> List[str]:
        """Tables in a valid execution order; ties keep declaration order.

        Raises:
            CyclicDependencyError: If the graph has a cycle
        """
        order = self._acyclic_dag().topological_sort()
        logger.debug(
            "resolver.resolved",
            extra=sanitize_extras({"pipeline": self.pipeline.name, "order": ",".join(order)}),
        )
        return order

    def execution_stages(self) -> List[List[str]]:
        return self._acyclic_dag().get_execution_stages()

    def plan(self, tables: Optional[Set[str]] = None) -> ExecutionPlan:
        """Execution plan for the whole pipeline or for ``tables`` plus their upstreams."""
        dag = self._acyclic_dag()
        if tables is not None:
            selected = set()
            for name in tables:
                self.pipeline.get(name)
                selected.add(name)
                selected |= dag.get_all_dependencies(name)
            dag = dag.get_subgraph(selected)

        stages = [
            ExecutionStage(stage=i, tables=names)
            for i, names in enumerate(dag.get_execution_stages(), start=1)
        ]
        plan = ExecutionPlan(
            pipeline_name=self.pipeline.name,
            stages=stages,
            dependency_graph=dag.adjacency_list,
        )
        logger.info(
            "execution_plan.created",
            extra=sanitize_extras({
                "pipeline": self.pipeline.name,
                "num_stages": len(stages),
                "num_tables": len(plan.table_names),
            }),
        )
        return plan

    def downstream_of(self, name: str) -> List[str]:
        """Transitive dependents of ``name`` in execution order."""
        self.pipeline.get(name)
        dependents = self._acyclic_dag().get_all_dependents(name)
        return [table for table in self.resolve() if table in dependents]


def build_dag(pipeline: PipelineDefinition) -> DependencyDAG:
    return DependencyResolver(pipeline).build_dag()


def resolve(pipeline: PipelineDefinition) -> List[str]:
    return DependencyResolver(pipeline).resolve()


def execution_stages(pipeline: PipelineDefinition) -> List[List[str]]:
    return DependencyResolver(pipeline).execution_stages()


def downstream_of(pipeline: PipelineDefinition, name: str) -> List[str]:
    return DependencyResolver(pipeline).downstream_of(name)


def is_stale(table: TableDefinition, store: TableStore) -> bool:
    """Whether a table may need recomputation.

    SOURCE and INCREMENTAL tables are always candidates; they find out
    themselves whether new data arrived. FULL_REFRESH and AGGREGATE tables
    are stale before their first commit and whenever an upstream version
    differs from the one recorded in their checkpoint.
    """
    if TableKind(table.kind) in (TableKind.SOURCE, TableKind.INCREMENTAL):
        return True

    checkpoint = store.get_checkpoint(table.name)
    if checkpoint is None:
        return True
    for upstream in table.upstream_names:
        if checkpoint.upstream_versions.get(upstream) != store.current_version(upstream):
            return True
    return False
