"""Data quality expectations and the engine that enforces them.

Expectations are evaluated per batch, in declaration order, against every
row the transformation produced:

    - WARN keeps violating rows and counts them
    - DROP removes violating rows; several DROP expectations accumulate
    - FAIL rejects the whole batch with ConstraintViolationError

A row whose condition evaluates to NULL counts as a violation.
"""

from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple, Union

import pandas as pd
from pydantic import PrivateAttr, field_validator

from liveflow.common.exceptions import ConstraintViolationError
from liveflow.constants import ExpectationAction, ViolationPolicy
from liveflow.logging import get_logger
from liveflow.observability.context import sanitize_extras
from liveflow.pipeline.utils.sql_predicate import SQLPredicate
from liveflow.types.base import LiveFlowBaseModel
from liveflow.types.results import ExpectationResult, QualityReport

logger = get_logger(__name__)

RowPredicate = Callable[[pd.DataFrame], Any]


class Expectation(LiveFlowBaseModel):
    """A named row-level condition with a violation policy.

    Attributes:
        name: Unique name within the table, used in quality reports
        condition: SQL boolean expression, or a callable returning a boolean
            Series for a DataFrame
        policy: What happens to violating rows
        dialect: SQLGlot dialect used to parse a SQL condition
    """

    name: str
    condition: Union[str, RowPredicate]
    policy: ViolationPolicy = ViolationPolicy.WARN
    dialect: str = "spark"

    _predicate: Optional[SQLPredicate] = PrivateAttr(default=None)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Expectation name must be a non-empty string")
        return v

    def model_post_init(self, __context: Any) -> None:
        if isinstance(self.condition, str):
            self._predicate = SQLPredicate(self.condition, dialect=self.dialect)

    @property
    def columns(self) -> FrozenSet[str]:
        """Columns referenced by a SQL condition; empty for callables."""
        return self._predicate.columns if self._predicate else frozenset()

    @property
    def description(self) -> str:
        if isinstance(self.condition, str):
            return self.condition
        return getattr(self.condition, "__name__", repr(self.condition))

    def satisfied(self, frame: pd.DataFrame) -> pd.Series:
        """Boolean mask of rows meeting the condition."""
        if self._predicate is not None:
            return self._predicate.mask(frame)

        result = self.condition(frame)
        if not isinstance(result, pd.Series):
            result = pd.Series(result, index=frame.index)
        return result.astype("boolean").fillna(False).astype(bool)


class ExpectationEngine:
    """Evaluates a table's expectations over one batch.

    Args:
        sample_size: Maximum offending rows carried by a ConstraintViolationError
    """

    def __init__(self, sample_size: int = 5):
        self.sample_size = sample_size

    def evaluate(
        self,
        table_name: str,
        frame: pd.DataFrame,
        expectations: Sequence[Expectation],
    ) -> Tuple[pd.DataFrame, QualityReport]:
        """Apply expectations to a batch.

        Returns:
            The rows surviving DROP expectations and the batch quality report

        Raises:
            ConstraintViolationError: On the first FAIL expectation with a violation
        """
        rows_checked = len(frame)
        report = QualityReport(table_name=table_name, rows_in=rows_checked, rows_out=rows_checked)
        keep = pd.Series(True, index=frame.index)

        for expectation in expectations:
            policy = ViolationPolicy(expectation.policy)
            satisfied = expectation.satisfied(frame)
            violated = int((~satisfied).sum())
            action = ExpectationAction.NONE

            if violated:
                if policy == ViolationPolicy.FAIL:
                    sample = frame.loc[~satisfied].head(self.sample_size)
                    raise ConstraintViolationError(
                        table=table_name,
                        constraint=expectation.name,
                        violations=violated,
                        rows_checked=rows_checked,
                        sample_rows=_to_records(sample),
                    )
                if policy == ViolationPolicy.DROP:
                    keep &= satisfied
                    action = ExpectationAction.DROPPED
                else:
                    action = ExpectationAction.WARNED
                    logger.warning(
                        "expectations.violated",
                        extra=sanitize_extras({
                            "table_name": table_name,
                            "expectation": expectation.name,
                            "condition": expectation.description,
                            "rows_violated": violated,
                            "rows_checked": rows_checked,
                        }),
                    )

            report.expectations[expectation.name] = ExpectationResult(
                name=expectation.name,
                policy=policy,
                rows_checked=rows_checked,
                rows_violated=violated,
                action=action,
            )

        kept = frame.loc[keep].reset_index(drop=True)
        report.rows_out = len(kept)

        if report.dropped_rows:
            logger.info(
                "expectations.rows_dropped",
                extra=sanitize_extras({
                    "table_name": table_name,
                    "rows_dropped": report.dropped_rows,
                    "rows_checked": rows_checked,
                }),
            )
        return kept, report


def _to_records(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    """Render rows as JSON-friendly dicts with NULLs as None."""
    return frame.astype(object).where(frame.notna(), None).to_dict(orient="records")
