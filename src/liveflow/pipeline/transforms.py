"""Declarative transformations producing a table from its inputs.

A transformation names the tables it reads (as :class:`InputRef` values),
declares which columns it needs from each of them, and computes its output
from pandas DataFrames keyed by input name. Declaring required columns lets
the materializer reject a schema mismatch before anything is written.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Union

import pandas as pd
from pydantic import Field, PrivateAttr, field_validator, model_validator

from liveflow.pipeline.refs import InputRef
from liveflow.pipeline.utils.sql_predicate import SQLPredicate
from liveflow.types.base import LiveFlowBaseModel


class Transformation(LiveFlowBaseModel, ABC):
    """Base class of all table transformations."""

    @property
    @abstractmethod
    def inputs(self) -> List[InputRef]:
        """Input references in declaration order."""

    @abstractmethod
    def required_columns(self) -> Dict[str, Set[str]]:
        """Columns the transformation reads, keyed by input table name."""

    @abstractmethod
    def apply(self, frames: Mapping[str, pd.DataFrame]) -> pd.DataFrame:
        """Compute the output from input frames keyed by table name."""

    @property
    def streaming_inputs(self) -> List[InputRef]:
        return [ref for ref in self.inputs if ref.streaming]

    @property
    def snapshot_inputs(self) -> List[InputRef]:
        return [ref for ref in self.inputs if not ref.streaming]

    def describe(self) -> str:
        return f"{type(self).__name__}({', '.join(str(ref) for ref in self.inputs)})"


class Select(Transformation):
    """Projection with optional filter and renames.

    Attributes:
        source: Table read
        columns: Columns kept, in order; None keeps all
        rename: Old name to new name, applied after projection
        where: Optional SQL predicate; rows where it is not true are removed
    """

    source: InputRef
    columns: Optional[List[str]] = None
    rename: Dict[str, str] = Field(default_factory=dict)
    where: Optional[str] = None
    dialect: str = "spark"

    _predicate: Optional[SQLPredicate] = PrivateAttr(default=None)

    def model_post_init(self, __context: Any) -> None:
        if self.where:
            self._predicate = SQLPredicate(self.where, dialect=self.dialect)

    @property
    def inputs(self) -> List[InputRef]:
        return [self.source]

    def required_columns(self) -> Dict[str, Set[str]]:
        needed = set(self.columns or []) | set(self.rename)
        if self._predicate is not None:
            needed |= self._predicate.columns
        return {self.source.name: needed}

    def apply(self, frames: Mapping[str, pd.DataFrame]) -> pd.DataFrame:
        frame = frames[self.source.name]
        if self._predicate is not None:
            frame = frame.loc[self._predicate.mask(frame)]
        if self.columns is not None:
            frame = frame[self.columns]
        if self.rename:
            frame = frame.rename(columns=self.rename)
        return frame.reset_index(drop=True)


class InnerJoin(Transformation):
    """Inner equi-join of two inputs; unmatched rows on either side are excluded.

    ``right_columns`` maps right-side columns to output names, mirroring
    ``SELECT l.*, r.id AS accounting_treatment``. When omitted, every right
    column except the join keys is carried over, prefixed with the right
    table name if it clashes with a left column.
    """

    left: InputRef
    right: InputRef
    left_on: Union[str, List[str]]
    right_on: Union[str, List[str]]
    right_columns: Optional[Dict[str, str]] = None

    @model_validator(mode="after")
    def validate_keys(self) -> "InnerJoin":
        if len(self.left_keys) != len(self.right_keys):
            raise ValueError(
                f"Join key count mismatch: {self.left_keys} vs {self.right_keys}"
            )
        if not self.left_keys:
            raise ValueError("Join requires at least one key column")
        return self

    @property
    def left_keys(self) -> List[str]:
        return [self.left_on] if isinstance(self.left_on, str) else list(self.left_on)

    @property
    def right_keys(self) -> List[str]:
        return [self.right_on] if isinstance(self.right_on, str) else list(self.right_on)

    @property
    def inputs(self) -> List[InputRef]:
        return [self.left, self.right]

    def required_columns(self) -> Dict[str, Set[str]]:
        right_needed = set(self.right_keys) | set(self.right_columns or {})
        left_needed = set(self.left_keys)
        if self.left.name == self.right.name:
            return {self.left.name: left_needed | right_needed}
        return {self.left.name: left_needed, self.right.name: right_needed}

    def apply(self, frames: Mapping[str, pd.DataFrame]) -> pd.DataFrame:
        left = frames[self.left.name]
        right = frames[self.right.name]

        if self.right_columns is not None:
            mapping = dict(self.right_columns)
        else:
            mapping = {
                column: (f"{self.right.name}_{column}" if column in left.columns else column)
                for column in right.columns
                if column not in self.right_keys
            }

        right_part = right[list(mapping)].rename(columns=mapping)
        join_keys = [f"__liveflow_join_key_{position}" for position in range(len(self.right_keys))]
        for join_key, column in zip(join_keys, self.right_keys):
            right_part[join_key] = right[column].to_numpy()

        # NULL keys never match, on either side.
        left = left.dropna(subset=self.left_keys)
        right_part = right_part.dropna(subset=join_keys)

        joined = left.merge(
            right_part,
            how="inner",
            left_on=self.left_keys,
            right_on=join_keys,
            sort=False,
        )
        return joined.drop(columns=join_keys).reset_index(drop=True)


class AggregateSpec(LiveFlowBaseModel):
    """One aggregate output column: ``func(column)``; ``count`` of ``*`` counts rows."""

    func: str
    column: str = "*"

    @model_validator(mode="before")
    @classmethod
    def coerce_tuple(cls, data: Any) -> Any:
        if isinstance(data, (tuple, list)) and len(data) == 2:
            return {"func": data[0], "column": data[1]}
        return data

    @field_validator("func")
    @classmethod
    def validate_func(cls, v: str) -> str:
        func = v.strip().lower()
        if func not in _AGGREGATE_FUNCTIONS:
            raise ValueError(
                f"Unsupported aggregate '{v}'. Use one of {sorted(_AGGREGATE_FUNCTIONS)}"
            )
        return func

    @model_validator(mode="after")
    def validate_star(self) -> "AggregateSpec":
        if self.column == "*" and self.func != "count":
            raise ValueError(f"'{self.func}(*)' is not supported; only count(*) is")
        return self


_AGGREGATE_FUNCTIONS = {"sum", "count", "avg", "mean", "min", "max", "count_distinct"}


class Aggregate(Transformation):
    """Grouped aggregate over the full snapshot of one input.

    NULL group keys form their own group, as in SQL ``GROUP BY``. Sums of
    groups with only NULL values are NULL.
    """

    source: InputRef
    group_by: List[str] = Field(default_factory=list)
    aggregations: Dict[str, AggregateSpec]

    @field_validator("aggregations")
    @classmethod
    def validate_aggregations(cls, v: Dict[str, AggregateSpec]) -> Dict[str, AggregateSpec]:
        if not v:
            raise ValueError("Aggregate requires at least one aggregation")
        return v

    @property
    def inputs(self) -> List[InputRef]:
        return [self.source]

    def required_columns(self) -> Dict[str, Set[str]]:
        needed = set(self.group_by)
        needed |= {spec.column for spec in self.aggregations.values() if spec.column != "*"}
        return {self.source.name: needed}

    def apply(self, frames: Mapping[str, pd.DataFrame]) -> pd.DataFrame:
        frame = frames[self.source.name]

        if not self.group_by:
            row = {name: _aggregate_series(frame, spec) for name, spec in self.aggregations.items()}
            return pd.DataFrame([row])

        grouped = frame.groupby(self.group_by, dropna=False, sort=True)
        parts = {name: _aggregate_grouped(grouped, spec) for name, spec in self.aggregations.items()}
        return pd.DataFrame(parts).reset_index()


def _aggregate_series(frame: pd.DataFrame, spec: AggregateSpec) -> Any:
    if spec.column == "*":
        return len(frame)
    series = frame[spec.column]
    if spec.func == "sum":
        return series.sum(min_count=1)
    if spec.func == "count":
        return int(series.count())
    if spec.func in ("avg", "mean"):
        return series.mean()
    if spec.func == "count_distinct":
        return int(series.nunique())
    return getattr(series, spec.func)()


def _aggregate_grouped(grouped, spec: AggregateSpec) -> pd.Series:
    if spec.column == "*":
        return grouped.size()
    column = grouped[spec.column]
    if spec.func == "sum":
        return column.sum(min_count=1)
    if spec.func == "count":
        return column.count()
    if spec.func in ("avg", "mean"):
        return column.mean()
    if spec.func == "count_distinct":
        return column.nunique()
    return getattr(column, spec.func)()


class PythonTransform(Transformation):
    """Arbitrary pure function of the input frames, passed in declaration order.

    Attributes:
        sources: Tables read
        func: Called as ``func(frame_1, frame_2, ...)``; must return a DataFrame
        required: Columns needed per input, checked before the call
    """

    sources: List[InputRef]
    func: Callable[..., pd.DataFrame]
    required: Dict[str, List[str]] = Field(default_factory=dict)

    @property
    def inputs(self) -> List[InputRef]:
        return list(self.sources)

    def required_columns(self) -> Dict[str, Set[str]]:
        return {name: set(columns) for name, columns in self.required.items()}

    def apply(self, frames: Mapping[str, pd.DataFrame]) -> pd.DataFrame:
        result = self.func(*[frames[ref.name] for ref in self.sources])
        if not isinstance(result, pd.DataFrame):
            raise TypeError(
                f"{getattr(self.func, '__name__', 'transform')} returned "
                f"{type(result).__name__}, expected a DataFrame"
            )
        return result.reset_index(drop=True)

    def describe(self) -> str:
        return f"PythonTransform[{getattr(self.func, '__name__', 'func')}]" \
               f"({', '.join(str(ref) for ref in self.inputs)})"
