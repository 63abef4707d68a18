"""Synthetic loan data for the demo pipeline.

Writes transaction batches as JSON-lines files into a landing directory and
the accounting treatment reference table as parquet. A fraction of the
generated rows is deliberately bad so every expectation of the demo has
something to report.
"""

from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np
import pandas as pd

from liveflow.logging import get_logger

logger = get_logger(__name__)

ACCOUNTING_TREATMENTS = ["amortised_cost", "fair_value_pl", "fair_value_oci", "held_for_sale"]
COUNTRY_CODES = ["NL", "DE", "FR", "GB", "US", "ES"]
CURRENCIES = {"NL": "EUR", "DE": "EUR", "FR": "EUR", "GB": "GBP", "US": "USD", "ES": "EUR"}
COST_CENTERS = ["CC-100", "CC-200", "CC-300", "CC-400"]


def generate_reference_table() -> pd.DataFrame:
    return pd.DataFrame({
        "id": np.arange(len(ACCOUNTING_TREATMENTS), dtype="int64"),
        "accounting_treatment": ACCOUNTING_TREATMENTS,
    })


def generate_transactions(
    rows: int,
    rng: np.random.Generator,
    start_id: int = 0,
    negative_balance_rate: float = 0.05,
    unknown_treatment_rate: float = 0.05,
    missing_cost_center_rate: float = 0.0,
) -> pd.DataFrame:
    """Random loan transactions.

    Args:
        rows: Number of transactions
        rng: Random generator
        start_id: First transaction id
        negative_balance_rate: Share of rows with a non-positive balance
        unknown_treatment_rate: Share of rows without a matching reference id
        missing_cost_center_rate: Share of rows with a NULL cost center
    """
    countries = rng.choice(COUNTRY_CODES, size=rows)
    balance = np.round(rng.gamma(shape=2.0, scale=5000.0, size=rows), 2)
    balance[rng.random(rows) < negative_balance_rate] *= -1
    arrears = np.round(balance * rng.uniform(0.01, 0.2, size=rows), 2)

    treatment = rng.integers(0, len(ACCOUNTING_TREATMENTS), size=rows)
    treatment[rng.random(rows) < unknown_treatment_rate] = len(ACCOUNTING_TREATMENTS) + 99

    cost_centers = rng.choice(COST_CENTERS, size=rows).astype(object)
    cost_centers[rng.random(rows) < missing_cost_center_rate] = None

    payment_dates = pd.Timestamp("2020-10-01") + pd.to_timedelta(rng.integers(0, 540, size=rows), unit="D")

    return pd.DataFrame({
        "id": np.arange(start_id, start_id + rows),
        "accounting_treatment_id": treatment,
        "balance": balance,
        "arrears_balance": arrears,
        "cost_center_code": cost_centers,
        "country_code": countries,
        "currency": [CURRENCIES[c] for c in countries],
        "count": rng.integers(1, 5, size=rows),
        "next_payment_date": payment_dates.strftime("%Y-%m-%d"),
    })


def write_transactions_batch(landing_path: Union[str, Path], frame: pd.DataFrame, index: int) -> Path:
    """Write one landing batch; files are named so that lexical order is arrival order."""
    landing = Path(landing_path)
    landing.mkdir(parents=True, exist_ok=True)
    target = landing / f"txs-{index:05d}.json"
    tmp = landing / f".{target.name}.tmp"
    frame.to_json(tmp, orient="records", lines=True)
    tmp.replace(target)
    return target


def generate_loan_data(
    output_dir: Union[str, Path],
    *,
    num_batches: int = 3,
    rows_per_batch: int = 100,
    seed: Optional[int] = 42,
    negative_balance_rate: float = 0.05,
    unknown_treatment_rate: float = 0.05,
    missing_cost_center_rate: float = 0.0,
) -> Dict[str, Path]:
    """Write a landing zone and a reference table under ``output_dir``.

    Returns:
        ``{"landing": <transactions dir>, "reference": <reference dir>}``
    """
    output = Path(output_dir)
    landing = output / "raw_transactions"
    reference = output / "ref_accounting_treatment"
    reference.mkdir(parents=True, exist_ok=True)

    rng = np.random.default_rng(seed)
    generate_reference_table().to_parquet(reference / "part-00000.parquet", index=False)

    existing = len(list(landing.glob("txs-*.json"))) if landing.exists() else 0
    for i in range(num_batches):
        frame = generate_transactions(
            rows_per_batch,
            rng,
            start_id=(existing + i) * rows_per_batch,
            negative_balance_rate=negative_balance_rate,
            unknown_treatment_rate=unknown_treatment_rate,
            missing_cost_center_rate=missing_cost_center_rate,
        )
        write_transactions_batch(landing, frame, existing + i)

    logger.info(
        "demo.data.generated",
        extra={"output_dir": str(output), "batches": num_batches, "rows_per_batch": rows_per_batch},
    )
    return {"landing": landing, "reference": reference}
