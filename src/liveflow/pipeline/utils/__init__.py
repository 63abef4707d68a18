from liveflow.pipeline.utils.sql_predicate import SQLPredicate, referenced_columns

__all__ = [
    "SQLPredicate",
    "referenced_columns",
]
