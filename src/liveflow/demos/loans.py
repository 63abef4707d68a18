"""Loan transactions demo pipeline.

Bronze ingests raw transactions incrementally from a JSON landing zone and
loads the accounting treatment reference table. Silver streams new
transactions, joins them with the reference table and enforces quality
rules. Gold rolls balances up per cost center.

    raw_txs ──stream──┐
                      ├─> cleaned_new_txs ──live──> new_loan_balances_by_cost_center
    ref_accounting_treatment ──live──┘
"""

from pathlib import Path
from typing import Optional, Union

from liveflow.constants import ZORDER_COLS_PROPERTY, Layer
from liveflow.pipeline import (
    Aggregate,
    FileSnapshotSource,
    InnerJoin,
    LandingZoneSource,
    PipelineDefinition,
    expect,
    expect_or_drop,
    expect_or_fail,
    live,
    stream,
)

RAW_TXS_SCHEMA = {
    "next_payment_date": "date",
    "balance": "double",
    "arrears_balance": "double",
}


def build_loans_pipeline(
    landing_path: Union[str, Path],
    reference_path: Union[str, Path],
    *,
    name: str = "loans",
    reference_format: str = "parquet",
    include_country_rollup: bool = False,
    dialect: Optional[str] = None,
) -> PipelineDefinition:
    """Declare the loan pipeline over a landing zone and a reference snapshot.

    Args:
        landing_path: Directory receiving JSON-lines transaction files
        reference_path: File or directory holding the accounting treatment table
        name: Pipeline name
        reference_format: Format of the reference data
        include_country_rollup: Also declare ``new_loan_balances_by_country``
        dialect: SQL dialect of the expectations
    """
    pipeline = PipelineDefinition(name, dialect=dialect)

    @pipeline.table(layer=Layer.BRONZE, schema_hints=RAW_TXS_SCHEMA)
    def raw_txs():
        """New raw loan data incrementally ingested from the landing zone"""
        return LandingZoneSource(landing_path, format="json")

    @pipeline.table(layer=Layer.BRONZE)
    def ref_accounting_treatment():
        """Lookup mapping for accounting codes"""
        return FileSnapshotSource(reference_path, format=reference_format)

    @pipeline.table(layer=Layer.SILVER)
    @expect("Payments should be this year", "next_payment_date > date('2020-12-31')")
    @expect_or_drop("Balance should be positive", "balance > 0 AND arrears_balance > 0")
    @expect_or_fail("Cost center must be specified", "cost_center_code IS NOT NULL")
    def cleaned_new_txs():
        """Livestream of new transactions, cleaned and compliant"""
        return InnerJoin(
            left=stream("raw_txs"),
            right=live("ref_accounting_treatment"),
            left_on="accounting_treatment_id",
            right_on="id",
            right_columns={"id": "accounting_treatment"},
        )

    @pipeline.table(layer=Layer.GOLD, table_properties={ZORDER_COLS_PROPERTY: "cost_center_code"})
    def new_loan_balances_by_cost_center():
        """Live table of new loan balances for consumption by different cost centers"""
        return Aggregate(
            source=live("cleaned_new_txs"),
            group_by=["cost_center_code"],
            aggregations={"bal": ("sum", "balance")},
        )

    if include_country_rollup:
        @pipeline.table(layer=Layer.GOLD, table_properties={ZORDER_COLS_PROPERTY: "country_code"})
        def new_loan_balances_by_country():
            """Live table of new loan balances per country"""
            return Aggregate(
                source=live("cleaned_new_txs"),
                group_by=["country_code"],
                aggregations={"count": ("sum", "count")},
            )

    return pipeline
