"""End-to-end runs of the loan demo pipeline over generated files."""

import numpy as np
import pandas as pd
import pytest
from sqlalchemy import inspect

from conftest import make_settings, statuses
from liveflow.demos import build_loans_pipeline, generate_loan_data, generate_transactions, write_transactions_batch
from liveflow.pipeline import PipelineExecutor

KNOWN_TREATMENTS = range(4)


@pytest.fixture
def loan_data(tmp_path):
    return generate_loan_data(tmp_path / "data", num_batches=3, rows_per_batch=50, seed=7)


@pytest.fixture
def pipeline(loan_data):
    return build_loans_pipeline(loan_data["landing"], loan_data["reference"], name="loans")


def _landed(landing):
    return pd.concat(
        [pd.read_json(path, lines=True) for path in sorted(landing.glob("txs-*.json"))],
        ignore_index=True,
    )


def _joined(frame):
    return frame[frame["accounting_treatment_id"].isin(KNOWN_TREATMENTS)]


def _clean(frame):
    joined = _joined(frame)
    return joined[(joined["balance"] > 0) & (joined["arrears_balance"] > 0)]


class TestLoansPipeline:
    """Test the bronze, silver and gold tables of the loan pipeline."""

    def test_first_run_builds_every_layer(self, pipeline, loan_data, table_store):
        landed = _landed(loan_data["landing"])
        expected = _clean(landed)

        result = PipelineExecutor(pipeline, store=table_store, settings=make_settings()).run()

        assert result.succeeded
        assert table_store.row_count("raw_txs") == len(landed)
        cleaned = table_store.read("cleaned_new_txs")
        assert sorted(cleaned["id"].tolist()) == sorted(expected["id"].tolist())
        assert set(cleaned["accounting_treatment"]) <= set(KNOWN_TREATMENTS)

        quality = result.tables["cleaned_new_txs"].quality
        assert quality.rows_in == len(_joined(landed))
        assert quality.dropped_rows == len(_joined(landed)) - len(expected)
        assert "Payments should be this year" in quality.expectations

        totals = table_store.read("new_loan_balances_by_cost_center").set_index("cost_center_code")["bal"]
        expected_totals = expected.groupby("cost_center_code")["balance"].sum()
        assert sorted(totals.index) == sorted(expected_totals.index)
        for cost_center, balance in expected_totals.items():
            assert totals[cost_center] == pytest.approx(balance)

    def test_second_run_is_a_no_op(self, pipeline, table_store):
        executor = PipelineExecutor(pipeline, store=table_store, settings=make_settings())
        executor.run()
        versions = {name: table_store.current_version(name) for name in pipeline.table_names}

        result = executor.run()

        assert statuses(result) == {
            "raw_txs": "no_new_data",
            "ref_accounting_treatment": "up_to_date",
            "cleaned_new_txs": "no_new_data",
            "new_loan_balances_by_cost_center": "up_to_date",
        }
        assert {name: table_store.current_version(name) for name in pipeline.table_names} == versions

    def test_new_landing_batch_is_processed_incrementally(self, pipeline, loan_data, tmp_path, memory_store):
        executor = PipelineExecutor(pipeline, store=memory_store, settings=make_settings())
        executor.run()
        before = _landed(loan_data["landing"])

        generate_loan_data(tmp_path / "data", num_batches=1, rows_per_batch=50, seed=11)
        new_rows = _landed(loan_data["landing"]).iloc[len(before):]
        result = executor.run()

        assert result.status_of("ref_accounting_treatment") == "up_to_date"
        assert result.tables["raw_txs"].rows_written == 50
        assert result.tables["cleaned_new_txs"].rows_written == len(_clean(new_rows))
        assert memory_store.row_count("cleaned_new_txs") == len(_clean(_landed(loan_data["landing"])))

    def test_gold_layout_hint_becomes_an_index(self, pipeline, sql_store):
        PipelineExecutor(pipeline, store=sql_store, settings=make_settings()).run()

        indexes = inspect(sql_store.engine).get_indexes("lf_new_loan_balances_by_cost_center")

        assert any(index["column_names"] == ["cost_center_code"] for index in indexes)

    def test_missing_cost_center_rejects_the_batch(self, pipeline, loan_data, memory_store):
        executor = PipelineExecutor(pipeline, store=memory_store, settings=make_settings())
        executor.run()
        checkpoint = memory_store.get_checkpoint("cleaned_new_txs")

        bad = generate_transactions(10, np.random.default_rng(3), start_id=10_000, negative_balance_rate=0.0,
                                    unknown_treatment_rate=0.0)
        bad["cost_center_code"] = bad["cost_center_code"].astype(object)
        bad.loc[4, "cost_center_code"] = None
        write_transactions_batch(loan_data["landing"], bad, 3)

        result = executor.run()

        assert result.status_of("raw_txs") == "succeeded"
        assert result.status_of("cleaned_new_txs") == "failed"
        assert result.tables["cleaned_new_txs"].error["details"]["violations"] == 1
        assert result.status_of("new_loan_balances_by_cost_center") == "skipped"
        assert memory_store.get_checkpoint("cleaned_new_txs") == checkpoint

    def test_country_rollup(self, loan_data, memory_store):
        pipeline = build_loans_pipeline(
            loan_data["landing"], loan_data["reference"], include_country_rollup=True,
        )

        result = PipelineExecutor(pipeline, store=memory_store, settings=make_settings()).run()

        expected = _clean(_landed(loan_data["landing"]))
        counts = memory_store.read("new_loan_balances_by_country").set_index("country_code")["count"]
        assert result.succeeded
        assert counts.sum() == expected["count"].sum()
