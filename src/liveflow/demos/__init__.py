"""Loan transactions demo: pipeline declaration and synthetic data."""

from liveflow.demos.data_generator import generate_loan_data, generate_transactions, write_transactions_batch
from liveflow.demos.loans import build_loans_pipeline

__all__ = [
    "build_loans_pipeline",
    "generate_loan_data",
    "generate_transactions",
    "write_transactions_batch",
]
