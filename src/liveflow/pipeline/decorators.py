"""Expectation decorators for table functions.

These attach expectation specs to the decorated function; the table
decorator of ``PipelineDefinition`` turns them into ``Expectation``
objects. They must sit below ``@pipeline.table``:

    >>> @pipeline.table(comment="Cleaned transactions")
    ... @expect("Payments should be this year", "next_payment_date > date('2020-12-31')")
    ... @expect_or_drop("Balance should be positive", "balance > 0")
    ... def cleaned_new_txs():
    ...     return InnerJoin(...)

Expectations keep the order in which they are written, top to bottom.
"""

from typing import Any, Callable, List, Mapping, NamedTuple, Union

from liveflow.common.exceptions import validation_error
from liveflow.constants import ViolationPolicy

EXPECTATIONS_ATTRIBUTE = "_liveflow_expectations"


class ExpectationSpec(NamedTuple):
    """Expectation as written on a table function, before it is compiled."""

    name: str
    condition: Union[str, Callable[..., Any]]
    policy: ViolationPolicy


def attached_expectations(func: Callable[..., Any]) -> List[ExpectationSpec]:
    """Specs attached to ``func`` in top-to-bottom order."""
    return list(getattr(func, EXPECTATIONS_ATTRIBUTE, []))


def _attach(specs: List[ExpectationSpec]) -> Callable[[Callable], Callable]:
    def decorator(func: Callable) -> Callable:
        # Decorators apply bottom-up; prepend to keep reading order.
        setattr(func, EXPECTATIONS_ATTRIBUTE, specs + attached_expectations(func))
        return func

    return decorator


def _specs_from_mapping(expectations: Mapping[str, Any], policy: ViolationPolicy) -> List[ExpectationSpec]:
    if not expectations:
        raise validation_error("expect_all requires at least one expectation", field="expectations")
    return [ExpectationSpec(name, condition, policy) for name, condition in expectations.items()]


def expect(name: str, condition: Union[str, Callable[..., Any]]) -> Callable[[Callable], Callable]:
    """Count and log violating rows, keep them."""
    return _attach([ExpectationSpec(name, condition, ViolationPolicy.WARN)])


def expect_or_drop(name: str, condition: Union[str, Callable[..., Any]]) -> Callable[[Callable], Callable]:
    """Remove violating rows from the batch."""
    return _attach([ExpectationSpec(name, condition, ViolationPolicy.DROP)])


def expect_or_fail(name: str, condition: Union[str, Callable[..., Any]]) -> Callable[[Callable], Callable]:
    """Reject the whole batch if any row violates the condition."""
    return _attach([ExpectationSpec(name, condition, ViolationPolicy.FAIL)])


def expect_all(expectations: Mapping[str, Any]) -> Callable[[Callable], Callable]:
    return _attach(_specs_from_mapping(expectations, ViolationPolicy.WARN))


def expect_all_or_drop(expectations: Mapping[str, Any]) -> Callable[[Callable], Callable]:
    return _attach(_specs_from_mapping(expectations, ViolationPolicy.DROP))


def expect_all_or_fail(expectations: Mapping[str, Any]) -> Callable[[Callable], Callable]:
    return _attach(_specs_from_mapping(expectations, ViolationPolicy.FAIL))
