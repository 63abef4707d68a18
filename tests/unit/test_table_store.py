"""Unit tests shared by the in-memory and SQL table stores."""

import pandas as pd
import pytest
from sqlalchemy import inspect

from liveflow.common.exceptions import (
    CheckpointGapError,
    CommitConflictError,
    ErrorCode,
    LiveFlowError,
    RunCancelledError,
)
from liveflow.constants import ZORDER_COLS_PROPERTY, TableKind, WriteMode
from liveflow.settings import StoreSettings
from liveflow.storage import InMemoryTableStore, SQLTableStore, create_store
from liveflow.storage.base import CommitRequest
from liveflow.types.checkpoint import Checkpoint


@pytest.fixture(params=["memory", "sql"])
def make_store(request):
    def _make(history_retention_versions=10):
        if request.param == "memory":
            return InMemoryTableStore(history_retention_versions=history_retention_versions)
        return SQLTableStore("sqlite://", history_retention_versions=history_retention_versions)

    return _make


def _request(table, version, frame, mode=WriteMode.APPEND, commit_id=None, base_version=None, **checkpoint):
    return CommitRequest(
        table_name=table,
        mode=mode,
        frame=frame,
        checkpoint=Checkpoint(table_name=table, version=version, **checkpoint),
        commit_id=commit_id or f"{table}-v{version}",
        base_version=version - 1 if base_version is None else base_version,
    )


class TestTableStore:
    """Test commit atomicity, idempotence and reads."""

    @pytest.fixture
    def store(self, make_store):
        store = make_store()
        store.register_table("raw_txs", TableKind.SOURCE)
        store.register_table("ref", TableKind.SOURCE, {ZORDER_COLS_PROPERTY: "id"})
        return store

    def test_append_commits_form_ordered_slices(self, store):
        store.commit(_request("raw_txs", 1, pd.DataFrame({"id": [1, 2]}), consumed_batches=["b1"]))
        info = store.commit(_request("raw_txs", 2, pd.DataFrame({"id": [3, 4, 5]}), consumed_batches=["b1", "b2"]))

        assert info.version == 2
        assert info.start_offset == 2
        assert store.row_count("raw_txs") == 5
        assert store.current_version("raw_txs") == 2
        assert store.read("raw_txs")["id"].tolist() == [1, 2, 3, 4, 5]

        slices = store.read_since("raw_txs", 1)
        assert [s.start_offset for s in slices] == [1, 2]
        assert slices[0].frame["id"].tolist() == [2]
        assert slices[1].frame["id"].tolist() == [3, 4, 5]
        assert store.read_since("raw_txs", 5) == []

    def test_checkpoint_is_stored_with_the_rows(self, store):
        assert store.get_checkpoint("raw_txs") is None

        store.commit(_request("raw_txs", 1, pd.DataFrame({"id": [1]}), consumed_batches=["b1"]))

        checkpoint = store.get_checkpoint("raw_txs")
        assert checkpoint.version == 1
        assert checkpoint.consumed_batches == ["b1"]

    def test_duplicate_commit_id_is_a_no_op(self, store):
        request = _request("raw_txs", 1, pd.DataFrame({"id": [1, 2]}))

        first = store.commit(request)
        second = store.commit(request)

        assert second.version == first.version == 1
        assert len(store.history("raw_txs")) == 1
        assert store.row_count("raw_txs") == 2

    def test_stale_base_version_conflicts(self, store):
        store.commit(_request("raw_txs", 1, pd.DataFrame({"id": [1]})))

        with pytest.raises(CommitConflictError) as exc_info:
            store.commit(_request("raw_txs", 1, pd.DataFrame({"id": [2]}), commit_id="other"))

        assert exc_info.value.is_retryable
        assert store.row_count("raw_txs") == 1

    def test_checkpoint_version_must_follow(self, store):
        with pytest.raises(LiveFlowError) as exc_info:
            store.commit(_request("raw_txs", 3, pd.DataFrame({"id": [1]}), base_version=0))

        assert exc_info.value.error_code == ErrorCode.COMMIT_ERROR

    def test_refused_guard_writes_nothing(self, store):
        with pytest.raises(RunCancelledError):
            store.commit(_request("raw_txs", 1, pd.DataFrame({"id": [1]})), guard=lambda: False)

        assert store.history("raw_txs") == []
        assert store.get_checkpoint("raw_txs") is None
        assert store.row_count("raw_txs") == 0

    def test_replace_keeps_history_for_as_of_reads(self, store):
        first = store.commit(_request("ref", 1, pd.DataFrame({"id": [0], "name": ["A"]}), mode=WriteMode.REPLACE))
        store.commit(_request("ref", 2, pd.DataFrame({"id": [0], "name": ["B"]}), mode=WriteMode.REPLACE))

        assert store.read("ref")["name"].tolist() == ["B"]
        assert store.read("ref", as_of_seq=first.seq)["name"].tolist() == ["A"]
        assert store.row_count("ref") == 1

    def test_as_of_before_first_commit_is_empty(self, store):
        raw = store.commit(_request("raw_txs", 1, pd.DataFrame({"id": [1]})))
        store.commit(_request("ref", 1, pd.DataFrame({"id": [0]}), mode=WriteMode.REPLACE))

        assert store.read("ref", as_of_seq=raw.seq).empty

    def test_pruned_versions_cannot_be_read(self, make_store):
        store = make_store(history_retention_versions=2)
        store.register_table("ref", TableKind.SOURCE)
        infos = [
            store.commit(_request("ref", version, pd.DataFrame({"id": [version]}), mode=WriteMode.REPLACE))
            for version in (1, 2, 3)
        ]

        with pytest.raises(CheckpointGapError):
            store.read("ref", as_of_seq=infos[0].seq)
        assert store.read("ref", as_of_seq=infos[1].seq)["id"].tolist() == [2]

    def test_reset_drops_rows_history_and_checkpoint(self, store):
        request = _request("raw_txs", 1, pd.DataFrame({"id": [1]}))
        store.commit(request)

        store.reset("raw_txs")

        assert store.history("raw_txs") == []
        assert store.get_checkpoint("raw_txs") is None
        assert store.row_count("raw_txs") == 0
        assert store.commit(request).version == 1

    def test_schema_and_properties(self, store):
        assert store.schema("raw_txs") is None

        store.commit(_request("raw_txs", 1, pd.DataFrame({"id": [1], "balance": [1.5]})))

        assert store.schema("raw_txs") == ["id", "balance"]
        assert store.properties("ref") == {ZORDER_COLS_PROPERTY: "id"}
        assert sorted(store.tables()) == ["raw_txs", "ref"]

    def test_unknown_table(self, store):
        with pytest.raises(LiveFlowError) as exc_info:
            store.read("missing")

        assert exc_info.value.error_code == ErrorCode.TABLE_NOT_FOUND


class TestSQLTableStore:
    """Test SQL specific behaviour."""

    def test_layout_hint_creates_index(self, sql_store):
        sql_store.register_table("totals", TableKind.AGGREGATE, {ZORDER_COLS_PROPERTY: "cost_center_code"})
        sql_store.commit(_request(
            "totals", 1, pd.DataFrame({"cost_center_code": ["CC-100"], "bal": [1.0]}), mode=WriteMode.REPLACE,
        ))

        indexes = inspect(sql_store.engine).get_indexes("lf_totals")

        assert any(index["column_names"] == ["cost_center_code"] for index in indexes)

    def test_new_columns_are_added(self, sql_store):
        sql_store.register_table("raw_txs", TableKind.SOURCE)
        sql_store.commit(_request("raw_txs", 1, pd.DataFrame({"id": [1]})))
        sql_store.commit(_request("raw_txs", 2, pd.DataFrame({"id": [2], "note": ["x"]})))

        frame = sql_store.read("raw_txs")

        assert frame["id"].tolist() == [1, 2]
        assert frame["note"].tolist()[1] == "x"

    def test_datetimes_survive_the_round_trip(self, sql_store):
        sql_store.register_table("raw_txs", TableKind.SOURCE)
        dates = pd.to_datetime(["2021-01-05", "2021-02-01"])
        sql_store.commit(_request("raw_txs", 1, pd.DataFrame({"next_payment_date": dates})))

        frame = sql_store.read("raw_txs")

        assert pd.api.types.is_datetime64_any_dtype(frame["next_payment_date"])
        assert frame["next_payment_date"].tolist() == list(dates)

    def test_state_survives_a_new_store_instance(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'liveflow.db'}"
        first = SQLTableStore(url)
        first.register_table("raw_txs", TableKind.SOURCE)
        first.commit(_request("raw_txs", 1, pd.DataFrame({"id": [1]}), consumed_batches=["b1"]))

        second = SQLTableStore(url)

        assert second.get_checkpoint("raw_txs").consumed_batches == ["b1"]
        assert second.read("raw_txs")["id"].tolist() == [1]


class TestCreateStore:
    """Test store selection from settings."""

    def test_memory_store_by_default(self, settings):
        assert isinstance(create_store(settings), InMemoryTableStore)

    def test_sql_store_when_url_configured(self, settings):
        settings.store = StoreSettings(url="sqlite://", table_prefix="t_")

        store = create_store(settings)

        assert isinstance(store, SQLTableStore)
        assert store.table_prefix == "t_"

    def test_invalid_url_is_a_configuration_error(self, settings):
        settings.store = StoreSettings(url="nosuchdialect://somewhere")

        with pytest.raises(LiveFlowError) as exc_info:
            create_store(settings)

        assert exc_info.value.error_code == ErrorCode.CONFIG_ERROR
        assert exc_info.value.details["config_key"] == "store.url"
