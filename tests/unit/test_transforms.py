"""Unit tests for declarative transformations."""

import pandas as pd
import pytest
from pydantic import ValidationError

from liveflow.constants import TableKind
from liveflow.pipeline import (
    Aggregate,
    InnerJoin,
    InMemoryLandingZone,
    PythonTransform,
    Select,
    infer_kind,
    live,
    stream,
)


@pytest.fixture
def transactions():
    return pd.DataFrame({
        "id": [1, 2, 3],
        "accounting_treatment_id": [0, 1, 99],
        "balance": [100.0, 50.0, 10.0],
        "name": ["a", "b", "c"],
    })


@pytest.fixture
def treatments():
    return pd.DataFrame({"id": [0, 1], "name": ["amortised_cost", "fair_value"]})


class TestInnerJoin:
    """Test the stream-to-snapshot join."""

    def test_unmatched_rows_are_excluded(self, transactions, treatments):
        join = InnerJoin(
            left=stream("raw_txs"),
            right=live("ref"),
            left_on="accounting_treatment_id",
            right_on="id",
            right_columns={"id": "accounting_treatment"},
        )

        result = join.apply({"raw_txs": transactions, "ref": treatments})

        assert len(result) == 2
        assert result["id"].tolist() == [1, 2]
        assert result["accounting_treatment"].tolist() == [0, 1]

    def test_null_keys_never_match(self):
        left = pd.DataFrame({"txn": [1, 2], "tid": [0.0, None]})
        right = pd.DataFrame({"id": [0.0, None], "label": ["known", "missing"]})
        join = InnerJoin(left=stream("raw"), right=live("ref"), left_on="tid", right_on="id")

        result = join.apply({"raw": left, "ref": right})

        assert result["txn"].tolist() == [1]
        assert result["label"].tolist() == ["known"]

    def test_clashing_right_columns_are_prefixed(self, transactions, treatments):
        join = InnerJoin(left=stream("raw_txs"), right=live("ref"), left_on="accounting_treatment_id", right_on="id")

        result = join.apply({"raw_txs": transactions, "ref": treatments})

        assert "ref_name" in result.columns
        assert result["ref_name"].tolist() == ["amortised_cost", "fair_value"]
        assert result["name"].tolist() == ["a", "b"]

    def test_required_columns_per_input(self):
        join = InnerJoin(
            left=stream("raw_txs"),
            right=live("ref"),
            left_on="accounting_treatment_id",
            right_on="id",
            right_columns={"name": "treatment"},
        )

        assert join.required_columns() == {
            "raw_txs": {"accounting_treatment_id"},
            "ref": {"id", "name"},
        }
        assert [ref.name for ref in join.streaming_inputs] == ["raw_txs"]
        assert [ref.name for ref in join.snapshot_inputs] == ["ref"]

    def test_key_count_mismatch_is_rejected(self):
        with pytest.raises(ValidationError):
            InnerJoin(left=stream("a"), right=live("b"), left_on=["x", "y"], right_on="x")


class TestAggregate:
    """Test grouped aggregates."""

    def test_sum_by_group_keeps_null_group(self):
        frame = pd.DataFrame({
            "cost_center_code": ["CC-100", "CC-100", "CC-200", None],
            "balance": [1.0, 2.0, 3.0, 4.0],
        })
        aggregate = Aggregate(
            source=live("cleaned"),
            group_by=["cost_center_code"],
            aggregations={"bal": ("sum", "balance")},
        )

        result = aggregate.apply({"cleaned": frame})
        totals = dict(zip(result["cost_center_code"].fillna("<null>"), result["bal"]))

        assert totals == {"CC-100": 3.0, "CC-200": 3.0, "<null>": 4.0}

    def test_ungrouped_count_star(self):
        aggregate = Aggregate(source=live("cleaned"), aggregations={"n": ("count", "*")})

        result = aggregate.apply({"cleaned": pd.DataFrame({"x": [1, 2, 3]})})

        assert result.to_dict(orient="records") == [{"n": 3}]

    def test_star_only_supports_count(self):
        with pytest.raises(ValidationError):
            Aggregate(source=live("cleaned"), aggregations={"total": ("sum", "*")})

    def test_unknown_function_is_rejected(self):
        with pytest.raises(ValidationError):
            Aggregate(source=live("cleaned"), aggregations={"m": ("median", "balance")})

    def test_required_columns(self):
        aggregate = Aggregate(
            source=live("cleaned"),
            group_by=["country_code"],
            aggregations={"count": ("sum", "count"), "rows": ("count", "*")},
        )

        assert aggregate.required_columns() == {"cleaned": {"country_code", "count"}}


class TestSelect:
    """Test projection, filter and rename."""

    def test_filter_project_rename(self, transactions):
        select = Select(
            source=live("raw_txs"),
            columns=["id", "balance"],
            rename={"balance": "amount"},
            where="balance > 20",
        )

        result = select.apply({"raw_txs": transactions})

        assert list(result.columns) == ["id", "amount"]
        assert result["id"].tolist() == [1, 2]
        assert select.required_columns() == {"raw_txs": {"id", "balance"}}


class TestPythonTransform:
    """Test user supplied transformation functions."""

    def test_frames_are_passed_in_declaration_order(self, transactions, treatments):
        def count_rows(left, right):
            return pd.DataFrame({"left": [len(left)], "right": [len(right)]})

        transform = PythonTransform(sources=[stream("raw_txs"), live("ref")], func=count_rows)

        result = transform.apply({"ref": treatments, "raw_txs": transactions})

        assert result.to_dict(orient="records") == [{"left": 3, "right": 2}]
        assert "count_rows" in transform.describe()

    def test_non_dataframe_result_is_rejected(self):
        transform = PythonTransform(sources=[live("raw_txs")], func=lambda frame: [1, 2])

        with pytest.raises(TypeError):
            transform.apply({"raw_txs": pd.DataFrame({"x": [1]})})


class TestInferKind:
    """Test table kind inference."""

    def test_kinds(self):
        assert infer_kind(InMemoryLandingZone()) == TableKind.SOURCE
        assert infer_kind(Select(source=stream("raw"))) == TableKind.INCREMENTAL
        assert infer_kind(Select(source=live("raw"))) == TableKind.FULL_REFRESH
        assert infer_kind(Aggregate(source=live("raw"), aggregations={"n": ("count", "*")})) == TableKind.AGGREGATE
