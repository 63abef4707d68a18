"""Unit tests for table and pipeline declarations."""

import pandas as pd
import pytest

from liveflow.common.exceptions import ErrorCode, LiveFlowError, PipelineDefinitionError
from liveflow.constants import Layer, MaterializationMode, TableKind, WriteMode
from liveflow.pipeline import (
    Aggregate,
    FrameSnapshotSource,
    InMemoryLandingZone,
    PipelineDefinition,
    PythonTransform,
    Select,
    TableDefinition,
    expect,
    expect_or_drop,
    live,
    stream,
)


class TestTableDeclaration:
    """Test the table decorator and declaration checks."""

    def test_kinds_are_inferred(self, loans_pipeline):
        kinds = {table.name: TableKind(table.kind) for table in loans_pipeline}

        assert kinds == {
            "raw_txs": TableKind.SOURCE,
            "ref_accounting_treatment": TableKind.SOURCE,
            "cleaned_new_txs": TableKind.INCREMENTAL,
            "balances_by_cost_center": TableKind.AGGREGATE,
        }

    def test_modes_follow_kind(self, loans_pipeline):
        raw = loans_pipeline.get("raw_txs")
        ref = loans_pipeline.get("ref_accounting_treatment")
        totals = loans_pipeline.get("balances_by_cost_center")

        assert raw.materialization_mode == MaterializationMode.INCREMENTAL
        assert raw.write_mode == WriteMode.APPEND
        assert ref.write_mode == WriteMode.REPLACE
        assert totals.write_mode == WriteMode.REPLACE
        assert loans_pipeline.get("cleaned_new_txs").is_append_only

    def test_expectations_keep_declaration_order(self, loans_pipeline):
        cleaned = loans_pipeline.get("cleaned_new_txs")

        assert [e.name for e in cleaned.expectations] == [
            "Balance should be positive",
            "Cost center must be specified",
        ]
        assert all(e.dialect == "spark" for e in cleaned.expectations)

    def test_comment_layer_and_properties(self):
        pipeline = PipelineDefinition("loans")

        @pipeline.table(layer="bronze", table_properties={"pipelines.autoOptimize.zOrderCols": "id"})
        def raw_txs():
            """Raw loan transactions."""
            return InMemoryLandingZone()

        raw = pipeline.get("raw_txs")
        assert raw.comment == "Raw loan transactions."
        assert raw.layer == Layer.BRONZE
        assert raw.table_properties == {"pipelines.autoOptimize.zOrderCols": "id"}
        assert raw.describe() == "raw_txs [source] <- memory:memory"

    def test_explicit_name_and_comment_win(self):
        pipeline = PipelineDefinition("loans")

        @pipeline.table(name="ref", comment="Accounting treatments")
        def reference():
            """Ignored."""
            return FrameSnapshotSource(pd.DataFrame({"id": [0]}))

        assert pipeline.table_names == ["ref"]
        assert pipeline.get("ref").comment == "Accounting treatments"

    def test_duplicate_table(self, loans_pipeline):
        with pytest.raises(PipelineDefinitionError) as exc_info:
            loans_pipeline.table(name="raw_txs")(lambda: InMemoryLandingZone())

        assert exc_info.value.error_code == ErrorCode.DUPLICATE_TABLE

    def test_invalid_table_name(self):
        pipeline = PipelineDefinition("loans")

        with pytest.raises(PipelineDefinitionError) as exc_info:
            pipeline.table(name="raw-txs")(lambda: InMemoryLandingZone())

        assert exc_info.value.error_code == ErrorCode.INVALID_IDENTIFIER

    def test_table_function_must_return_source_or_transformation(self):
        pipeline = PipelineDefinition("loans")

        with pytest.raises(PipelineDefinitionError):
            @pipeline.table
            def raw_txs():
                return pd.DataFrame({"id": [1]})

    def test_aggregate_cannot_stream(self):
        with pytest.raises(PipelineDefinitionError) as exc_info:
            TableDefinition(
                name="totals",
                kind=TableKind.AGGREGATE,
                transform=Aggregate(source=stream("raw_txs"), aggregations={"n": ("count", "*")}),
            )

        assert "cannot read stream()" in exc_info.value.message

    def test_incremental_needs_a_stream_input(self):
        with pytest.raises(PipelineDefinitionError):
            TableDefinition(
                name="cleaned",
                kind=TableKind.INCREMENTAL,
                transform=Select(source=live("raw_txs")),
            )

    def test_source_table_needs_a_reader(self):
        with pytest.raises(PipelineDefinitionError):
            TableDefinition(name="raw", kind=TableKind.SOURCE, transform=Select(source=live("x")))

    def test_duplicate_expectation_names(self):
        pipeline = PipelineDefinition("loans")

        with pytest.raises(PipelineDefinitionError):
            @pipeline.table
            @expect("positive", "balance > 0")
            @expect_or_drop("positive", "balance >= 0")
            def cleaned():
                return Select(source=stream("raw"))

    def test_invalid_expectation_expression(self):
        pipeline = PipelineDefinition("loans")

        with pytest.raises(LiveFlowError) as exc_info:
            @pipeline.table
            @expect("broken", "balance >")
            def cleaned():
                return Select(source=stream("raw"))

        assert exc_info.value.error_code == ErrorCode.INVALID_EXPRESSION

    def test_unsupported_schema_hint(self):
        pipeline = PipelineDefinition("loans")

        with pytest.raises(PipelineDefinitionError):
            pipeline.table(name="raw", schema_hints={"balance": "money"})(lambda: InMemoryLandingZone())

    def test_full_refresh_kind_for_snapshot_only_transforms(self):
        pipeline = PipelineDefinition("loans")
        pipeline.table(name="latest")(
            lambda: PythonTransform(sources=[live("ref")], func=lambda frame: frame)
        )

        assert TableKind(pipeline.get("latest").kind) == TableKind.FULL_REFRESH


class TestPipelineDefinition:
    """Test the pipeline catalog."""

    def test_empty_name(self):
        with pytest.raises(PipelineDefinitionError):
            PipelineDefinition("  ")

    def test_unknown_table(self, loans_pipeline):
        with pytest.raises(PipelineDefinitionError) as exc_info:
            loans_pipeline.get("missing")

        assert exc_info.value.error_code == ErrorCode.UNDEFINED_TABLE

    def test_catalog_protocol(self, loans_pipeline):
        assert len(loans_pipeline) == 4
        assert "raw_txs" in loans_pipeline
        assert "LIVE.raw_txs" not in loans_pipeline
        assert [t.name for t in loans_pipeline] == loans_pipeline.table_names

    def test_upstream_names(self, loans_pipeline):
        cleaned = loans_pipeline.get("cleaned_new_txs")

        assert cleaned.upstream_names == ["raw_txs", "ref_accounting_treatment"]
        assert [str(ref) for ref in cleaned.inputs] == [
            "stream(LIVE.raw_txs)",
            "LIVE.ref_accounting_treatment",
        ]

    def test_live_prefix_is_stripped(self):
        assert stream("LIVE.raw_txs").name == "raw_txs"
        assert live("live.ref").name == "ref"
        assert Select(source="LIVE.raw_txs").source.name == "raw_txs"

    def test_validate_returns_execution_order(self, loans_pipeline):
        assert loans_pipeline.validate() == [
            "raw_txs",
            "ref_accounting_treatment",
            "cleaned_new_txs",
            "balances_by_cost_center",
        ]

    def test_dialect_defaults_to_settings(self):
        assert PipelineDefinition("loans").dialect == "spark"
