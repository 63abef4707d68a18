"""Table and pipeline declarations.

A :class:`PipelineDefinition` is the catalog of a pipeline: an explicit
value holding its table declarations in declaration order. Tables are
added with :meth:`PipelineDefinition.add_table` or declared with the
:meth:`PipelineDefinition.table` decorator:

    >>> pipeline = PipelineDefinition("loans")
    >>> @pipeline.table(layer=Layer.BRONZE)
    ... def raw_txs():
    ...     return LandingZoneSource("/landing/txs", format="json")
    >>> @pipeline.table
    ... @expect_or_fail("Cost center must be specified", "cost_center_code IS NOT NULL")
    ... def cleaned_new_txs():
    ...     return Select(source=stream("raw_txs"))
"""

import re
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from pydantic import Field, model_validator

from liveflow.common.exceptions import ErrorCode, PipelineDefinitionError
from liveflow.constants import Layer, MaterializationMode, TableKind, WriteMode
from liveflow.logging import get_logger
from liveflow.observability.context import sanitize_extras
from liveflow.pipeline.decorators import attached_expectations
from liveflow.pipeline.expectations import Expectation
from liveflow.pipeline.refs import InputRef
from liveflow.pipeline.sources import SourceReader
from liveflow.pipeline.transforms import Aggregate, Transformation
from liveflow.types.base import LiveFlowBaseModel

logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Declared type name -> pandas dtype used when conforming a batch.
SCHEMA_HINT_TYPES: Dict[str, str] = {
    "string": "string",
    "str": "string",
    "varchar": "string",
    "int": "Int64",
    "integer": "Int64",
    "bigint": "Int64",
    "long": "Int64",
    "float": "float64",
    "double": "float64",
    "decimal": "float64",
    "boolean": "boolean",
    "bool": "boolean",
    "date": "datetime64[ns]",
    "timestamp": "datetime64[ns]",
}


def infer_kind(definition: Union[SourceReader, Transformation]) -> TableKind:
    """Kind implied by what a table function returns."""
    if isinstance(definition, SourceReader):
        return TableKind.SOURCE
    if isinstance(definition, Aggregate):
        return TableKind.AGGREGATE
    if isinstance(definition, Transformation) and definition.streaming_inputs:
        return TableKind.INCREMENTAL
    return TableKind.FULL_REFRESH


class TableDefinition(LiveFlowBaseModel):
    """Declaration of one live table.

    Attributes:
        name: Table identifier, unique within the pipeline
        kind: How the table is produced; inferred from source/transform when omitted
        source: External reader, for SOURCE tables
        transform: Transformation over other tables, for all other kinds
        expectations: Quality rules in declaration order
        comment: Free text description
        layer: Optional bronze/silver/gold label
        schema_hints: Column name to declared type, applied as casts before commit
        table_properties: Opaque layout hints handed to the table store
    """

    name: str
    kind: TableKind
    source: Optional[SourceReader] = None
    transform: Optional[Transformation] = None
    expectations: List[Expectation] = Field(default_factory=list)
    comment: Optional[str] = None
    layer: Optional[Layer] = None
    schema_hints: Dict[str, str] = Field(default_factory=dict)
    table_properties: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def default_kind(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("kind") is None:
            produced = data.get("source") or data.get("transform")
            if produced is not None:
                data = {**data, "kind": infer_kind(produced)}
        return data

    @model_validator(mode="after")
    def validate_declaration(self) -> "TableDefinition":
        if not _IDENTIFIER.match(self.name):
            raise PipelineDefinitionError(
                f"Invalid table name '{self.name}': use letters, digits and underscores",
                error_code=ErrorCode.INVALID_IDENTIFIER,
                details={"table": self.name},
            )

        kind = TableKind(self.kind)
        if kind == TableKind.SOURCE:
            if self.source is None or self.transform is not None:
                raise self._invalid("SOURCE tables need a source reader and no transformation")
        elif self.transform is None or self.source is not None:
            raise self._invalid(f"{kind.name} tables need a transformation and no source reader")

        if kind in (TableKind.AGGREGATE, TableKind.FULL_REFRESH) and self.transform.streaming_inputs:
            raise self._invalid(
                f"{kind.name} tables are recomputed in full and cannot read stream() inputs: "
                f"{', '.join(str(ref) for ref in self.transform.streaming_inputs)}"
            )
        if kind == TableKind.INCREMENTAL and not self.transform.streaming_inputs:
            raise self._invalid("INCREMENTAL tables need at least one stream() input")

        seen = set()
        for expectation in self.expectations:
            if expectation.name in seen:
                raise self._invalid(f"Duplicate expectation name '{expectation.name}'")
            seen.add(expectation.name)

        for column, type_name in self.schema_hints.items():
            if type_name.lower() not in SCHEMA_HINT_TYPES:
                raise self._invalid(
                    f"Unsupported type '{type_name}' for column '{column}'; "
                    f"use one of {sorted(SCHEMA_HINT_TYPES)}"
                )
        return self

    def _invalid(self, message: str) -> PipelineDefinitionError:
        return PipelineDefinitionError(
            f"Table '{self.name}': {message}",
            details={"table": self.name},
        )

    @property
    def inputs(self) -> List[InputRef]:
        return list(self.transform.inputs) if self.transform is not None else []

    @property
    def upstream_names(self) -> List[str]:
        names: List[str] = []
        for ref in self.inputs:
            if ref.name not in names:
                names.append(ref.name)
        return names

    @property
    def materialization_mode(self) -> MaterializationMode:
        kind = TableKind(self.kind)
        if kind == TableKind.SOURCE:
            return MaterializationMode(self.source.materialization_mode)
        if kind == TableKind.INCREMENTAL:
            return MaterializationMode.INCREMENTAL
        return MaterializationMode.FULL

    @property
    def is_append_only(self) -> bool:
        return self.materialization_mode == MaterializationMode.INCREMENTAL

    @property
    def write_mode(self) -> WriteMode:
        return WriteMode.APPEND if self.is_append_only else WriteMode.REPLACE

    def describe(self) -> str:
        produced = self.source.describe() if self.source is not None else self.transform.describe()
        return f"{self.name} [{TableKind(self.kind).value}] <- {produced}"


class PipelineDefinition:
    """Catalog of table declarations.

    Args:
        name: Pipeline name, used in logs, telemetry and run results
        dialect: SQLGlot dialect for SQL expectations; defaults to the
            configured ``quality.sql_dialect``
    """

    def __init__(self, name: str, dialect: Optional[str] = None):
        if not name or not name.strip():
            raise PipelineDefinitionError("Pipeline name must be a non-empty string")
        self.name = name
        self._dialect = dialect
        self._tables: Dict[str, TableDefinition] = {}

    @property
    def dialect(self) -> str:
        if self._dialect is None:
            from liveflow.settings import get_settings

            self._dialect = get_settings().quality.sql_dialect
        return self._dialect

    def add_table(self, definition: TableDefinition) -> TableDefinition:
        """Add a declaration.

        Raises:
            PipelineDefinitionError: If a table with the same name exists
        """
        if definition.name in self._tables:
            raise PipelineDefinitionError(
                f"Table '{definition.name}' is already declared in pipeline '{self.name}'",
                error_code=ErrorCode.DUPLICATE_TABLE,
                details={"table": definition.name, "pipeline": self.name},
            )
        self._tables[definition.name] = definition
        logger.debug(
            "pipeline.table.declared",
            extra=sanitize_extras({
                "pipeline": self.name,
                "table_name": definition.name,
                "kind": TableKind(definition.kind).value,
                "inputs": ",".join(str(ref) for ref in definition.inputs),
                "expectations": len(definition.expectations),
            }),
        )
        return definition

    def table(
        self,
        func: Optional[Callable[[], Any]] = None,
        *,
        name: Optional[str] = None,
        kind: Optional[Union[str, TableKind]] = None,
        comment: Optional[str] = None,
        layer: Optional[Union[str, Layer]] = None,
        schema_hints: Optional[Dict[str, str]] = None,
        table_properties: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Declare a table from a function returning a source reader or transformation.

        The function is called once, at declaration time. Usable bare
        (``@pipeline.table``) or with arguments. Expectation decorators must
        be applied below it.
        """
        def decorator(fn: Callable[[], Any]) -> Callable[[], Any]:
            produced = fn()
            if not isinstance(produced, (SourceReader, Transformation)):
                raise PipelineDefinitionError(
                    f"Table function '{fn.__name__}' must return a SourceReader or a "
                    f"Transformation, got {type(produced).__name__}",
                    details={"table": name or fn.__name__},
                )

            table_kind = TableKind(kind) if kind is not None else infer_kind(produced)
            expectations = [
                Expectation(name=spec.name, condition=spec.condition, policy=spec.policy, dialect=self.dialect)
                for spec in attached_expectations(fn)
            ]
            self.add_table(TableDefinition(
                name=name or fn.__name__,
                kind=table_kind,
                source=produced if isinstance(produced, SourceReader) else None,
                transform=produced if isinstance(produced, Transformation) else None,
                expectations=expectations,
                comment=comment or (fn.__doc__.strip() if fn.__doc__ else None),
                layer=Layer(layer) if layer is not None else None,
                schema_hints=dict(schema_hints or {}),
                table_properties=dict(table_properties or {}),
            ))
            return fn

        if func is not None:
            return decorator(func)
        return decorator

    def get(self, name: str) -> TableDefinition:
        try:
            return self._tables[name]
        except KeyError:
            raise PipelineDefinitionError(
                f"Table '{name}' is not declared in pipeline '{self.name}'",
                error_code=ErrorCode.UNDEFINED_TABLE,
                details={"table": name, "pipeline": self.name},
            ) from None

    @property
    def tables(self) -> List[TableDefinition]:
        return list(self._tables.values())

    @property
    def table_names(self) -> List[str]:
        return list(self._tables)

    def __contains__(self, name: object) -> bool:
        return name in self._tables

    def __iter__(self) -> Iterator[TableDefinition]:
        return iter(list(self._tables.values()))

    def __len__(self) -> int:
        return len(self._tables)

    def validate(self) -> List[str]:
        """Resolve the dependency graph; returns the execution order.

        Raises:
            UndefinedTableError: If a table reads from an undeclared table
            CyclicDependencyError: If the graph has a cycle
            PipelineDefinitionError: For other graph errors
        """
        from liveflow.pipeline.resolver import resolve

        return resolve(self)

    def __repr__(self) -> str:
        return f"PipelineDefinition(name={self.name!r}, tables={self.table_names})"
