"""SQLAlchemy-backed table store.

Layout:
    - ``liveflow_tables``: registered tables, kind and layout hints
    - ``liveflow_commits``: commit log; one row per commit, keyed by a global sequence
    - ``liveflow_checkpoints``: latest checkpoint per table as JSON
    - ``<prefix><table>``: row data, tagged with ``_lf_seq`` (commit) and ``_lf_offset``

Rows, commit log entry and checkpoint are written in one transaction, so a
failed or cancelled commit leaves no trace. Row data goes through pandas
``to_sql``/``read_sql`` on the transaction's connection.
"""

import json
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Engine,
    Float,
    BigInteger,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    bindparam,
    create_engine,
    delete,
    inspect,
    select,
    text,
    update,
)
from sqlalchemy.engine import Connection
from sqlalchemy.pool import StaticPool

from liveflow.common.exceptions import CheckpointGapError
from liveflow.constants import CLUSTER_COLS_PROPERTY, ZORDER_COLS_PROPERTY, TableKind, WriteMode
from liveflow.logging import get_logger
from liveflow.observability.context import sanitize_extras
from liveflow.storage.base import (
    CommitGuard,
    CommitInfo,
    CommitRequest,
    CommitSlice,
    TableStore,
    table_not_found,
)
from liveflow.types.checkpoint import Checkpoint

logger = get_logger(__name__)

_SEQ_COLUMN = "_lf_seq"
_OFFSET_COLUMN = "_lf_offset"

metadata = MetaData()

tables_table = Table(
    "liveflow_tables",
    metadata,
    Column("name", String(255), primary_key=True),
    Column("kind", String(32), nullable=False),
    Column("properties", Text, nullable=False, default="{}"),
)

commits_table = Table(
    "liveflow_commits",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("table_name", String(255), nullable=False, index=True),
    Column("version", Integer, nullable=False),
    Column("mode", String(16), nullable=False),
    Column("row_count", Integer, nullable=False),
    Column("start_offset", Integer, nullable=False),
    Column("commit_id", String(255), nullable=False, unique=True),
    Column("run_id", String(64)),
    Column("committed_at", DateTime(timezone=True), nullable=False),
    Column("columns", Text, nullable=False),
    Column("dtypes", Text, nullable=False),
    Column("data_pruned", Boolean, nullable=False, default=False),
)

checkpoints_table = Table(
    "liveflow_checkpoints",
    metadata,
    Column("table_name", String(255), primary_key=True),
    Column("payload", Text, nullable=False),
)


def create_sql_engine(url: str) -> Engine:
    """Create an engine usable from the executor's worker threads."""
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


class SQLTableStore(TableStore):
    """Table store persisted in a relational database through SQLAlchemy.

    Args:
        engine: SQLAlchemy engine or URL
        table_prefix: Prefix of physical row-data tables
        history_retention_versions: Versions of replaced tables kept readable
    """

    def __init__(
        self,
        engine: Any,
        table_prefix: str = "lf_",
        history_retention_versions: int = 10,
    ):
        super().__init__(history_retention_versions)
        self.engine: Engine = create_sql_engine(engine) if isinstance(engine, str) else engine
        self.table_prefix = table_prefix
        self._lock = threading.RLock()
        metadata.create_all(self.engine)

    def _data_table(self, name: str) -> str:
        return f"{self.table_prefix}{name}"

    def _require(self, conn: Connection, name: str) -> Any:
        row = conn.execute(select(tables_table).where(tables_table.c.name == name)).first()
        if row is None:
            raise table_not_found(name)
        return row

    def register_table(
        self,
        name: str,
        kind: TableKind,
        properties: Optional[Mapping[str, str]] = None,
    ) -> None:
        payload = json.dumps(dict(properties or {}), sort_keys=True)
        with self._lock, self.engine.begin() as conn:
            exists = conn.execute(select(tables_table.c.name).where(tables_table.c.name == name)).first()
            if exists:
                conn.execute(
                    update(tables_table)
                    .where(tables_table.c.name == name)
                    .values(kind=TableKind(kind).value, properties=payload)
                )
            else:
                conn.execute(
                    tables_table.insert().values(name=name, kind=TableKind(kind).value, properties=payload)
                )

    def tables(self) -> List[str]:
        with self._lock, self.engine.connect() as conn:
            return [row.name for row in conn.execute(select(tables_table.c.name).order_by(tables_table.c.name))]

    def properties(self, name: str) -> Dict[str, str]:
        with self._lock, self.engine.connect() as conn:
            return json.loads(self._require(conn, name).properties)

    def get_checkpoint(self, name: str) -> Optional[Checkpoint]:
        with self._lock, self.engine.connect() as conn:
            self._require(conn, name)
            row = conn.execute(
                select(checkpoints_table.c.payload).where(checkpoints_table.c.table_name == name)
            ).first()
            return Checkpoint.model_validate_json(row.payload) if row else None

    def _commit_rows(self, conn: Connection, name: str) -> List[Any]:
        return list(conn.execute(
            select(commits_table).where(commits_table.c.table_name == name).order_by(commits_table.c.seq)
        ))

    @staticmethod
    def _to_info(row: Any) -> CommitInfo:
        committed_at = row.committed_at
        if committed_at.tzinfo is None:
            committed_at = committed_at.replace(tzinfo=timezone.utc)
        return CommitInfo(
            table_name=row.table_name,
            version=row.version,
            seq=row.seq,
            mode=WriteMode(row.mode),
            row_count=row.row_count,
            start_offset=row.start_offset,
            commit_id=row.commit_id,
            run_id=row.run_id,
            committed_at=committed_at,
            columns=json.loads(row.columns),
        )

    def history(self, name: str) -> List[CommitInfo]:
        with self._lock, self.engine.connect() as conn:
            self._require(conn, name)
            return [self._to_info(row) for row in self._commit_rows(conn, name)]

    def _row_count(self, conn: Connection, name: str) -> int:
        rows = self._commit_rows(conn, name)
        if not rows:
            return 0
        last = rows[-1]
        if WriteMode(last.mode) == WriteMode.REPLACE:
            return last.row_count
        return last.start_offset + last.row_count

    def row_count(self, name: str) -> int:
        with self._lock, self.engine.connect() as conn:
            self._require(conn, name)
            return self._row_count(conn, name)

    def _load(self, conn: Connection, name: str, commits: List[Any], offset: int = 0) -> pd.DataFrame:
        """Load the rows of the given commits, projected onto the last commit's columns."""
        columns = json.loads(commits[-1].columns) if commits else []
        if not commits or not inspect(conn).has_table(self._data_table(name)):
            return pd.DataFrame(columns=columns)

        statement = text(
            f'SELECT * FROM "{self._data_table(name)}" '
            f'WHERE {_SEQ_COLUMN} IN :seqs AND {_OFFSET_COLUMN} >= :offset '
            f'ORDER BY {_SEQ_COLUMN}, {_OFFSET_COLUMN}'
        ).bindparams(bindparam("seqs", expanding=True))
        frame = pd.read_sql(statement, conn, params={"seqs": [row.seq for row in commits], "offset": offset})
        frame = frame[columns] if columns else frame.drop(columns=[_SEQ_COLUMN, _OFFSET_COLUMN])
        return _restore_dtypes(frame, json.loads(commits[-1].dtypes))

    def read(self, name: str, as_of_seq: Optional[int] = None) -> pd.DataFrame:
        with self._lock, self.engine.connect() as conn:
            self._require(conn, name)
            visible = [row for row in self._commit_rows(conn, name) if as_of_seq is None or row.seq <= as_of_seq]
            if not visible:
                latest = self._commit_rows(conn, name)
                return pd.DataFrame(columns=json.loads(latest[-1].columns) if latest else [])

            last = visible[-1]
            if WriteMode(last.mode) == WriteMode.REPLACE:
                if last.data_pruned:
                    raise CheckpointGapError(
                        table=name,
                        upstream=name,
                        position=last.seq,
                        message=f"Version {last.version} of '{name}' is outside the retained history",
                    )
                return self._load(conn, name, [last])
            return self._load(conn, name, visible)

    def read_since(self, name: str, offset: int) -> List[CommitSlice]:
        with self._lock, self.engine.connect() as conn:
            self._require(conn, name)
            slices: List[CommitSlice] = []
            for row in self._commit_rows(conn, name):
                if row.start_offset + row.row_count <= offset or row.row_count == 0:
                    continue
                start = max(offset, row.start_offset)
                frame = self._load(conn, name, [row], offset=start).reset_index(drop=True)
                slices.append(CommitSlice(seq=row.seq, start_offset=start, frame=frame))
            return slices

    def commit(self, request: CommitRequest, guard: Optional[CommitGuard] = None) -> CommitInfo:
        name = request.table_name
        with self._lock, self.engine.begin() as conn:
            existing = conn.execute(
                select(commits_table).where(commits_table.c.commit_id == request.commit_id)
            ).first()
            if existing is not None:
                logger.info(
                    "store.commit.duplicate",
                    extra=sanitize_extras({"table_name": name, "commit_id": request.commit_id}),
                )
                return self._to_info(existing)

            table_row = self._require(conn, name)
            rows = self._commit_rows(conn, name)
            current_version = rows[-1].version if rows else 0
            self._check_commit(request, current_version, guard)

            mode = WriteMode(request.mode)
            start_offset = self._row_count(conn, name) if mode == WriteMode.APPEND else 0
            frame = request.frame.reset_index(drop=True)
            columns = [str(column) for column in frame.columns]
            committed_at = datetime.now(timezone.utc)

            result = conn.execute(commits_table.insert().values(
                table_name=name,
                version=current_version + 1,
                mode=mode.value,
                row_count=len(frame),
                start_offset=start_offset,
                commit_id=request.commit_id,
                run_id=request.run_id,
                committed_at=committed_at,
                columns=json.dumps(columns),
                dtypes=json.dumps({column: str(dtype) for column, dtype in frame.dtypes.items()}),
                data_pruned=False,
            ))
            seq = result.inserted_primary_key[0]

            self._write_rows(conn, name, frame, seq, start_offset, json.loads(table_row.properties))

            conn.execute(delete(checkpoints_table).where(checkpoints_table.c.table_name == name))
            conn.execute(checkpoints_table.insert().values(
                table_name=name,
                payload=request.checkpoint.model_dump_json(),
            ))

            if mode == WriteMode.REPLACE:
                self._prune(conn, name)

            return CommitInfo(
                table_name=name,
                version=current_version + 1,
                seq=seq,
                mode=mode,
                row_count=len(frame),
                start_offset=start_offset,
                commit_id=request.commit_id,
                run_id=request.run_id,
                committed_at=committed_at,
                columns=columns,
            )

    def _write_rows(
        self,
        conn: Connection,
        name: str,
        frame: pd.DataFrame,
        seq: int,
        start_offset: int,
        properties: Dict[str, str],
    ) -> None:
        physical = self._data_table(name)
        inspector = inspect(conn)
        created = not inspector.has_table(physical)

        if not created:
            existing = {column["name"] for column in inspector.get_columns(physical)}
            for column in frame.columns:
                if column not in existing:
                    conn.execute(text(
                        f'ALTER TABLE "{physical}" ADD COLUMN "{column}" {_sql_type_for(frame[column])}'
                    ))

        data = frame.copy()
        data[_SEQ_COLUMN] = seq
        data[_OFFSET_COLUMN] = range(start_offset, start_offset + len(data))
        data.to_sql(physical, conn, if_exists="append", index=False)

        if created:
            conn.execute(text(
                f'CREATE INDEX IF NOT EXISTS "ix_{physical}_seq" ON "{physical}" ({_SEQ_COLUMN}, {_OFFSET_COLUMN})'
            ))
            layout = [
                column for column in _layout_columns(properties)
                if column in frame.columns
            ]
            if layout:
                quoted = ", ".join(f'"{column}"' for column in layout)
                conn.execute(text(
                    f'CREATE INDEX IF NOT EXISTS "ix_{physical}_layout" ON "{physical}" ({quoted})'
                ))
                logger.info(
                    "store.layout.indexed",
                    extra=sanitize_extras({"table_name": name, "columns": ",".join(layout)}),
                )

    def _prune(self, conn: Connection, name: str) -> None:
        live = [row for row in self._commit_rows(conn, name) if not row.data_pruned]
        expired = live[:-self.history_retention_versions]
        if not expired:
            return
        seqs = [row.seq for row in expired]
        conn.execute(
            text(f'DELETE FROM "{self._data_table(name)}" WHERE {_SEQ_COLUMN} IN :seqs')
            .bindparams(bindparam("seqs", expanding=True)),
            {"seqs": seqs},
        )
        conn.execute(update(commits_table).where(commits_table.c.seq.in_(seqs)).values(data_pruned=True))

    def reset(self, name: str) -> None:
        with self._lock, self.engine.begin() as conn:
            self._require(conn, name)
            conn.execute(delete(commits_table).where(commits_table.c.table_name == name))
            conn.execute(delete(checkpoints_table).where(checkpoints_table.c.table_name == name))
            conn.execute(text(f'DROP TABLE IF EXISTS "{self._data_table(name)}"'))


def _layout_columns(properties: Mapping[str, str]) -> List[str]:
    columns: List[str] = []
    for key in (ZORDER_COLS_PROPERTY, CLUSTER_COLS_PROPERTY):
        for column in (properties.get(key) or "").split(","):
            column = column.strip()
            if column and column not in columns:
                columns.append(column)
    return columns


def _sql_type_for(series: pd.Series) -> str:
    if pd.api.types.is_bool_dtype(series):
        return Boolean().compile()
    if pd.api.types.is_integer_dtype(series):
        return BigInteger().compile()
    if pd.api.types.is_float_dtype(series):
        return Float().compile()
    if pd.api.types.is_datetime64_any_dtype(series):
        return DateTime().compile()
    return Text().compile()


def _restore_dtypes(frame: pd.DataFrame, dtypes: Mapping[str, str]) -> pd.DataFrame:
    """Undo type loss of the database round trip for datetimes and nullable types."""
    for column, dtype in dtypes.items():
        if column not in frame.columns:
            continue
        if dtype.startswith("datetime64"):
            frame[column] = pd.to_datetime(frame[column], errors="coerce")
        elif dtype in ("Int64", "boolean", "string"):
            frame[column] = frame[column].astype(dtype)
        elif dtype == "bool" and frame[column].notna().all():
            frame[column] = frame[column].astype(bool)
    return frame
