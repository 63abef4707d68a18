"""Unit tests for expectations, the expectation engine and its decorators."""

from unittest.mock import patch

import pandas as pd
import pytest

from liveflow.common.exceptions import ConstraintViolationError, ErrorCode, LiveFlowError
from liveflow.constants import ExpectationAction, ViolationPolicy
from liveflow.pipeline import (
    Expectation,
    ExpectationEngine,
    expect,
    expect_all,
    expect_all_or_drop,
    expect_or_drop,
    expect_or_fail,
)
from liveflow.pipeline.decorators import attached_expectations


class TestExpectationEngine:
    """Test WARN, DROP and FAIL policies over one batch."""

    @pytest.fixture
    def engine(self):
        return ExpectationEngine(sample_size=5)

    @pytest.fixture
    def batch(self):
        return pd.DataFrame({
            "id": [1, 2, 3, 4, 5],
            "balance": [10.0, -1.0, 5.0, 0.0, 7.0],
            "arrears_balance": [1.0, 1.0, 0.0, 1.0, 2.0],
        })

    def test_drop_keeps_passing_rows_and_reports_the_rest(self, engine, batch):
        positive = Expectation(name="positive", condition="balance > 0", policy=ViolationPolicy.DROP)

        kept, report = engine.evaluate("cleaned", batch, [positive])

        assert kept["id"].tolist() == [1, 3, 5]
        assert report.rows_in == 5
        assert report.rows_out == 3
        assert report.dropped_rows == 2
        assert report.violations_for("positive") == 2
        assert report.expectations["positive"].action == ExpectationAction.DROPPED

    def test_compound_drop_rule_over_one_batch(self, engine):
        batch = pd.DataFrame({
            "id": [1, 2, 3, 4, 5],
            "balance": [100.0, -20.0, 30.0, 45.0, 0.0],
            "arrears_balance": [5.0, 1.0, 2.0, 3.0, 4.0],
        })
        rule = Expectation(
            name="Balance should be positive",
            condition="balance > 0 AND arrears_balance > 0",
            policy=ViolationPolicy.DROP,
        )

        kept, report = engine.evaluate("cleaned_new_txs", batch, [rule])

        assert kept["id"].tolist() == [1, 3, 4]
        assert report.rows_out == 3
        assert report.dropped_rows == 2
        assert report.violations_for("Balance should be positive") == 2

    def test_drop_expectations_accumulate(self, engine, batch):
        expectations = [
            Expectation(name="balance", condition="balance > 0", policy=ViolationPolicy.DROP),
            Expectation(name="arrears", condition="arrears_balance > 0", policy=ViolationPolicy.DROP),
        ]

        kept, report = engine.evaluate("cleaned", batch, expectations)

        assert kept["id"].tolist() == [1, 5]
        assert report.violations_for("balance") == 2
        assert report.violations_for("arrears") == 1
        assert list(report.expectations) == ["balance", "arrears"]

    def test_warn_keeps_rows_and_logs(self, engine, batch):
        rule = Expectation(name="positive", condition="balance > 0", policy=ViolationPolicy.WARN)

        with patch("liveflow.pipeline.expectations.logger") as mock_logger:
            kept, report = engine.evaluate("cleaned", batch, [rule])

        assert len(kept) == 5
        assert report.violations_for("positive") == 2
        assert report.expectations["positive"].action == ExpectationAction.WARNED
        assert mock_logger.warning.call_args[0][0] == "expectations.violated"

    def test_fail_rejects_whole_batch_with_sample(self, engine):
        batch = pd.DataFrame({
            "id": list(range(10)),
            "cost_center_code": ["CC-100"] * 9 + [None],
        })
        rule = Expectation(
            name="Cost center must be specified",
            condition="cost_center_code IS NOT NULL",
            policy=ViolationPolicy.FAIL,
        )

        with pytest.raises(ConstraintViolationError) as exc_info:
            engine.evaluate("cleaned", batch, [rule])

        error = exc_info.value
        assert error.error_code == ErrorCode.DATA_QUALITY_ERROR
        assert error.violations == 1
        assert error.constraint == "Cost center must be specified"
        assert error.sample_rows == [{"id": 9, "cost_center_code": None}]
        assert error.details["rows_checked"] == 10

    def test_null_condition_counts_as_violation(self, engine):
        batch = pd.DataFrame({"balance": [1.0, None]})
        rule = Expectation(name="positive", condition="balance > 0", policy=ViolationPolicy.DROP)

        kept, report = engine.evaluate("cleaned", batch, [rule])

        assert len(kept) == 1
        assert report.violations_for("positive") == 1

    def test_callable_condition(self, engine, batch):
        rule = Expectation(
            name="positive",
            condition=lambda frame: frame["balance"] > 0,
            policy=ViolationPolicy.DROP,
        )

        kept, _ = engine.evaluate("cleaned", batch, [rule])

        assert kept["id"].tolist() == [1, 3, 5]
        assert rule.columns == frozenset()

    def test_clean_batch_passes_untouched(self, engine, batch):
        rule = Expectation(name="has_id", condition="id IS NOT NULL", policy=ViolationPolicy.FAIL)

        kept, report = engine.evaluate("cleaned", batch, [rule])

        assert len(kept) == 5
        assert report.expectations["has_id"].passed
        assert report.expectations["has_id"].action == ExpectationAction.NONE

    def test_sample_size_limits_rows(self):
        batch = pd.DataFrame({"balance": [-1.0] * 10})
        rule = Expectation(name="positive", condition="balance > 0", policy=ViolationPolicy.FAIL)

        with pytest.raises(ConstraintViolationError) as exc_info:
            ExpectationEngine(sample_size=2).evaluate("cleaned", batch, [rule])

        assert len(exc_info.value.sample_rows) == 2
        assert exc_info.value.violations == 10


class TestExpectationDecorators:
    """Test attaching expectations to table functions."""

    def test_decorators_keep_reading_order(self):
        @expect("Payments should be this year", "next_payment_date > date('2020-12-31')")
        @expect_or_drop("Balance should be positive", "balance > 0")
        @expect_or_fail("Cost center must be specified", "cost_center_code IS NOT NULL")
        def cleaned_new_txs():
            return None

        specs = attached_expectations(cleaned_new_txs)

        assert [spec.name for spec in specs] == [
            "Payments should be this year",
            "Balance should be positive",
            "Cost center must be specified",
        ]
        assert [spec.policy for spec in specs] == [
            ViolationPolicy.WARN,
            ViolationPolicy.DROP,
            ViolationPolicy.FAIL,
        ]

    def test_expect_all_variants(self):
        @expect_all_or_drop({"positive": "balance > 0", "has_id": "id IS NOT NULL"})
        def table():
            return None

        specs = attached_expectations(table)

        assert [spec.name for spec in specs] == ["positive", "has_id"]
        assert all(spec.policy == ViolationPolicy.DROP for spec in specs)

    def test_expect_all_requires_expectations(self):
        with pytest.raises(LiveFlowError) as exc_info:
            expect_all({})

        assert exc_info.value.error_code == ErrorCode.VALIDATION_ERROR

    def test_undecorated_function_has_no_expectations(self):
        def table():
            return None

        assert attached_expectations(table) == []
