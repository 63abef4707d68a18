"""SQL predicate compiler for expectations and row filters.

Boolean SQL expressions such as ``balance > 0 AND arrears_balance > 0`` are
parsed once with SQLGlot and evaluated column-wise over a pandas DataFrame.
Evaluation follows SQL three-valued logic: comparisons involving NULL yield
NULL, ``AND``/``OR``/``NOT`` use Kleene logic via pandas' nullable
``boolean`` dtype, and callers decide how NULL results are treated.

Supported syntax:
    - ``AND``, ``OR``, ``NOT`` and parentheses
    - comparisons ``= != <> < <= > >=``, ``BETWEEN``, ``IN (...)``,
      ``LIKE``/``ILIKE``, ``IS [NOT] NULL``, ``IS [NOT] TRUE/FALSE``
    - arithmetic ``+ - * / %`` and unary minus
    - string, numeric, boolean and NULL literals
    - ``CAST``/``TRY_CAST`` to numeric, string, boolean, date and timestamp types
    - functions ``date``, ``to_date``, ``timestamp``, ``to_timestamp``,
      ``current_date``, ``coalesce``, ``abs``, ``lower``, ``upper``,
      ``length``, ``trim``

Example:
    >>> predicate = SQLPredicate("cost_center_code IS NOT NULL")
    >>> predicate.columns
    frozenset({'cost_center_code'})
    >>> predicate.mask(frame)  # True where the row satisfies the predicate
"""

import datetime as dt
import operator
import re
from typing import Callable, Dict, FrozenSet, List, Type

import numpy as np
import pandas as pd
import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError

from liveflow.common.exceptions import ErrorCode, PipelineDefinitionError
from liveflow.logging import get_logger

logger = get_logger(__name__)

_COMPARISONS: Dict[Type[exp.Expression], Callable] = {
    exp.EQ: operator.eq,
    exp.NEQ: operator.ne,
    exp.GT: operator.gt,
    exp.GTE: operator.ge,
    exp.LT: operator.lt,
    exp.LTE: operator.le,
}

_ARITHMETIC: Dict[Type[exp.Expression], Callable] = {
    exp.Add: operator.add,
    exp.Sub: operator.sub,
    exp.Mul: operator.mul,
    exp.Div: operator.truediv,
    exp.Mod: operator.mod,
}

_INTEGER_TYPES = {"TINYINT", "SMALLINT", "INT", "MEDIUMINT", "BIGINT", "UTINYINT", "USMALLINT", "UINT", "UBIGINT"}
_FLOAT_TYPES = {"FLOAT", "DOUBLE", "DECIMAL", "BIGDECIMAL", "MONEY", "SMALLMONEY"}
_STRING_TYPES = {"CHAR", "NCHAR", "VARCHAR", "NVARCHAR", "TEXT", "STRING"}
_DATE_TYPES = {"DATE", "DATE32"}
_TIMESTAMP_TYPES = {"DATETIME", "DATETIME64", "TIMESTAMP", "TIMESTAMPTZ", "TIMESTAMPLTZ", "TIMESTAMPNTZ"}

_DATE_FUNCTIONS = {"DATE", "TO_DATE", "TSORDSTODATE", "STRTODATE", "DATESTRTODATE"}
_TIMESTAMP_FUNCTIONS = {"TIMESTAMP", "TO_TIMESTAMP", "STRTOTIME", "TIMESTRTOTIME", "TSORDSTOTIMESTAMP"}


class UnsupportedExpressionError(ValueError):
    """Raised when an expression uses syntax the compiler cannot evaluate."""


class SQLPredicate:
    """A parsed SQL boolean expression that can be evaluated over DataFrames.

    The expression is validated at construction, so an unsupported or
    malformed predicate fails when a pipeline is declared rather than when
    data arrives.

    Attributes:
        sql: The original expression text
        dialect: SQLGlot dialect used for parsing
        expression: Parsed SQLGlot expression tree
    """

    def __init__(self, sql: str, dialect: str = "spark"):
        if not sql or not sql.strip():
            raise PipelineDefinitionError(
                "Predicate expression must be a non-empty string",
                error_code=ErrorCode.INVALID_EXPRESSION,
            )

        self.sql = sql
        self.dialect = dialect
        try:
            self.expression = sqlglot.parse_one(sql, dialect=dialect)
        except ParseError as exc:
            raise PipelineDefinitionError(
                f"Cannot parse predicate '{sql}'",
                error_code=ErrorCode.INVALID_EXPRESSION,
                details={"expression": sql, "dialect": dialect},
                cause=exc,
            ) from exc

        try:
            self.evaluate(pd.DataFrame(columns=sorted(self.columns)))
        except UnsupportedExpressionError as exc:
            raise PipelineDefinitionError(
                f"Unsupported predicate '{sql}': {exc}",
                error_code=ErrorCode.INVALID_EXPRESSION,
                details={"expression": sql, "dialect": dialect},
            ) from exc

    def __repr__(self) -> str:
        return f"SQLPredicate({self.sql!r})"

    @property
    def columns(self) -> FrozenSet[str]:
        """Names of all columns referenced by the expression."""
        return frozenset(column.name for column in self.expression.find_all(exp.Column))

    def evaluate(self, frame: pd.DataFrame) -> pd.Series:
        """Evaluate to a nullable boolean Series aligned with ``frame``."""
        return _as_boolean(self._eval(self.expression, frame))

    def mask(self, frame: pd.DataFrame) -> pd.Series:
        """Evaluate to a plain boolean Series; NULL results count as False."""
        return self.evaluate(frame).fillna(False).astype(bool)

    def _eval(self, node: exp.Expression, frame: pd.DataFrame) -> pd.Series:
        index = frame.index

        if isinstance(node, exp.Paren):
            return self._eval(node.this, frame)

        if isinstance(node, exp.Column):
            return frame[node.name]

        if isinstance(node, exp.Null):
            return pd.Series(None, index=index, dtype=object)

        if isinstance(node, exp.Boolean):
            return pd.Series(bool(node.this), index=index, dtype="boolean")

        if isinstance(node, exp.Literal):
            value = node.this if node.is_string else _parse_number(node.this)
            return pd.Series(value, index=index, dtype=object if node.is_string else None)

        if isinstance(node, exp.Neg):
            return -_numeric(self._eval(node.this, frame))

        if isinstance(node, exp.And):
            return _as_boolean(self._eval(node.left, frame)) & _as_boolean(self._eval(node.right, frame))

        if isinstance(node, exp.Or):
            return _as_boolean(self._eval(node.left, frame)) | _as_boolean(self._eval(node.right, frame))

        if isinstance(node, exp.Not):
            return ~_as_boolean(self._eval(node.this, frame))

        if isinstance(node, exp.Is):
            return self._eval_is(node, frame)

        for node_type, op in _COMPARISONS.items():
            if isinstance(node, node_type):
                return _compare(op, self._eval(node.left, frame), self._eval(node.right, frame))

        for node_type, op in _ARITHMETIC.items():
            if isinstance(node, node_type):
                result = op(_numeric(self._eval(node.left, frame)), _numeric(self._eval(node.right, frame)))
                return result.replace([np.inf, -np.inf], np.nan)

        if isinstance(node, exp.Between):
            operand = self._eval(node.this, frame)
            low = _compare(operator.ge, operand, self._eval(node.args["low"], frame))
            high = _compare(operator.le, operand, self._eval(node.args["high"], frame))
            return low & high

        if isinstance(node, exp.In):
            if node.args.get("query") is not None or node.args.get("unnest") is not None:
                raise UnsupportedExpressionError("IN with a subquery")
            operand = self._eval(node.this, frame)
            result = pd.Series(False, index=index, dtype="boolean")
            for value in node.expressions:
                result = result | _compare(operator.eq, operand, self._eval(value, frame))
            return result

        if isinstance(node, (exp.Like, exp.ILike)):
            return self._eval_like(node, frame)

        if isinstance(node, exp.Cast):
            return _cast(self._eval(node.this, frame), node.to.this.name)

        if isinstance(node, exp.Func):
            return self._eval_function(node, frame)

        raise UnsupportedExpressionError(f"{type(node).__name__} ({node.sql(dialect=self.dialect)})")

    def _eval_is(self, node: exp.Is, frame: pd.DataFrame) -> pd.Series:
        operand = self._eval(node.this, frame)
        target = node.expression
        if isinstance(target, exp.Null):
            return operand.isna().astype("boolean")
        if isinstance(target, exp.Boolean):
            matches = _as_boolean(operand) == bool(target.this)
            return matches.fillna(False).astype("boolean")
        raise UnsupportedExpressionError(f"IS {target.sql(dialect=self.dialect)}")

    def _eval_like(self, node: exp.Expression, frame: pd.DataFrame) -> pd.Series:
        pattern = node.expression
        if not (isinstance(pattern, exp.Literal) and pattern.is_string):
            raise UnsupportedExpressionError("LIKE pattern must be a string literal")

        regex = _like_to_regex(pattern.this)
        flags = re.DOTALL | (re.IGNORECASE if isinstance(node, exp.ILike) else 0)
        operand = self._eval(node.this, frame)

        result = pd.Series(pd.NA, index=frame.index, dtype="boolean")
        known = operand.notna()
        if known.any():
            result[known] = operand[known].astype(str).str.fullmatch(regex, flags=flags).astype(bool)
        return result

    def _eval_function(self, node: exp.Func, frame: pd.DataFrame) -> pd.Series:
        name = _function_name(node)
        args = [self._eval(arg, frame) for arg in _function_args(node)]

        if name in _DATE_FUNCTIONS and args:
            return _to_datetime(args[0]).dt.normalize()
        if name in _TIMESTAMP_FUNCTIONS and args:
            return _to_datetime(args[0])
        if name in ("CURRENTDATE", "CURRENT_DATE"):
            return pd.Series(pd.Timestamp.now().normalize(), index=frame.index)
        if name == "COALESCE" and args:
            result = args[0]
            for arg in args[1:]:
                result = result.where(result.notna(), arg)
            return result
        if name == "ABS" and args:
            return _numeric(args[0]).abs()
        if name in ("LOWER", "UPPER", "LENGTH", "TRIM") and args:
            strings = args[0].astype("string")
            if name == "LOWER":
                return strings.str.lower()
            if name == "UPPER":
                return strings.str.upper()
            if name == "TRIM":
                return strings.str.strip()
            return strings.str.len()

        raise UnsupportedExpressionError(f"function {name}")


def referenced_columns(sql: str, dialect: str = "spark") -> FrozenSet[str]:
    """Return the column names referenced by a SQL expression."""
    return SQLPredicate(sql, dialect=dialect).columns


def _function_name(node: exp.Func) -> str:
    if isinstance(node, exp.Anonymous):
        return node.name.upper()
    return node.key.upper()


def _function_args(node: exp.Func) -> List[exp.Expression]:
    args: List[exp.Expression] = []
    this = node.args.get("this")
    if isinstance(this, exp.Expression):
        args.append(this)
    args.extend(node.expressions)
    return args


def _parse_number(text: str):
    try:
        return int(text)
    except ValueError:
        return float(text)


def _like_to_regex(pattern: str) -> str:
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return "".join(parts)


def _is_temporal(series: pd.Series) -> bool:
    if pd.api.types.is_datetime64_any_dtype(series):
        return True
    if series.dtype == object:
        non_null = series.dropna()
        if not non_null.empty:
            return isinstance(non_null.iloc[0], (dt.date, np.datetime64))
    return False


def _is_numeric(series: pd.Series) -> bool:
    return pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series)


def _numeric(series: pd.Series) -> pd.Series:
    if _is_numeric(series):
        return series
    return pd.to_numeric(series, errors="coerce")


def _to_datetime(series: pd.Series) -> pd.Series:
    if pd.api.types.is_datetime64_any_dtype(series):
        return series
    return pd.to_datetime(series, errors="coerce")


def _as_boolean(series: pd.Series) -> pd.Series:
    if isinstance(series.dtype, pd.BooleanDtype):
        return series
    return series.astype("boolean")


def _coerce_pair(left: pd.Series, right: pd.Series):
    if _is_temporal(left) or _is_temporal(right):
        return _to_datetime(left), _to_datetime(right)
    if _is_numeric(left) and not _is_numeric(right):
        return left, _numeric(right)
    if _is_numeric(right) and not _is_numeric(left):
        return _numeric(left), right
    return left, right


def _compare(op: Callable, left: pd.Series, right: pd.Series) -> pd.Series:
    left, right = _coerce_pair(left, right)
    result = pd.Series(pd.NA, index=left.index, dtype="boolean")
    known = left.notna() & right.notna()
    if known.any():
        result[known] = op(left[known], right[known]).astype(bool)
    return result


def _cast(series: pd.Series, type_name: str) -> pd.Series:
    if type_name in _INTEGER_TYPES:
        numeric = pd.to_numeric(series, errors="coerce").astype("float64")
        return np.trunc(numeric).astype("Int64")
    if type_name in _FLOAT_TYPES:
        return pd.to_numeric(series, errors="coerce").astype("float64")
    if type_name in _STRING_TYPES:
        return series.astype("string")
    if type_name in _DATE_TYPES:
        return _to_datetime(series).dt.normalize()
    if type_name in _TIMESTAMP_TYPES:
        return _to_datetime(series)
    if type_name == "BOOLEAN":
        return _as_boolean(series)
    raise UnsupportedExpressionError(f"CAST to {type_name}")
