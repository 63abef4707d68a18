"""Source readers feeding SOURCE tables.

Two collaborators are supported:

    - incremental sources (landing zones) expose an append-only, ordered set
      of batches; a table's checkpoint records which batch keys it consumed
    - snapshot sources (reference tables) expose only their current content

Reachability failures raise :class:`UpstreamUnavailableError`, which the
executor retries. A consumed batch that disappears raises
:class:`CheckpointGapError`; ingestion halts rather than skipping data.
"""

import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Union

import fastavro
import pandas as pd

from liveflow.common.exceptions import CheckpointGapError, ErrorCode, LiveFlowError, UpstreamUnavailableError
from liveflow.constants import MaterializationMode
from liveflow.logging import get_logger
from liveflow.observability.context import sanitize_extras

logger = get_logger(__name__)

SUPPORTED_FORMATS = ("json", "csv", "parquet", "avro")


class SourceBatch(NamedTuple):
    key: str
    frame: pd.DataFrame


class SourceReader(ABC):
    """Base class of external sources."""

    materialization_mode: MaterializationMode

    @abstractmethod
    def describe(self) -> str:
        """Human-readable location used in logs and errors."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.describe()})"


class IncrementalSource(SourceReader):
    """Append-only source made of ordered, immutable batches."""

    materialization_mode = MaterializationMode.INCREMENTAL

    @abstractmethod
    def list_batches(self) -> List[str]:
        """Keys of all currently available batches in arrival order."""

    @abstractmethod
    def read_batch(self, key: str) -> pd.DataFrame:
        """Read the records of one batch."""

    def new_records_since(self, consumed: Iterable[str], table_name: str = "") -> Iterator[SourceBatch]:
        """Lazily yield every batch not yet consumed, in arrival order.

        Args:
            consumed: Batch keys recorded in the reader's checkpoint
            table_name: Table ingesting the batches, for error reporting

        Raises:
            CheckpointGapError: If a consumed batch is no longer available
            UpstreamUnavailableError: If the source cannot be reached
        """
        consumed = list(consumed)
        available = self.list_batches()
        available_keys = set(available)

        missing = [key for key in consumed if key not in available_keys]
        if missing:
            raise CheckpointGapError(
                table=table_name or self.describe(),
                upstream=self.describe(),
                position=missing[0],
                available=len(available),
                message=(
                    f"{len(missing)} batch(es) recorded in the checkpoint of "
                    f"'{table_name or self.describe()}' are no longer in {self.describe()}, "
                    f"first missing: {missing[0]}"
                ),
            )

        seen = set(consumed)
        for key in available:
            if key not in seen:
                yield SourceBatch(key, self.read_batch(key))


class SnapshotSource(SourceReader):
    """Source exposing only its current full content."""

    materialization_mode = MaterializationMode.FULL

    @abstractmethod
    def current_snapshot(self) -> pd.DataFrame:
        """Read the full current content."""


def _read_file(path: Path, file_format: str, options: Dict[str, Any]) -> pd.DataFrame:
    if file_format == "json":
        kwargs = {"lines": True, **options}
        return pd.read_json(path, **kwargs)
    if file_format == "csv":
        return pd.read_csv(path, **options)
    if file_format == "avro":
        with open(path, "rb") as handle:
            return pd.DataFrame.from_records(list(fastavro.reader(handle)), **options)
    return pd.read_parquet(path, **options)


def _read_or_raise(source: str, path: Path, file_format: str, options: Dict[str, Any]) -> pd.DataFrame:
    try:
        return _read_file(path, file_format, options)
    except OSError as exc:
        raise UpstreamUnavailableError(source, f"Cannot read {path}", cause=exc) from exc
    except (ValueError, EOFError) as exc:
        raise LiveFlowError(
            f"Malformed {file_format} file {path}",
            error_code=ErrorCode.MALFORMED_RECORD,
            details={"source": source, "path": str(path)},
            cause=exc,
        ) from exc


def _validate_format(file_format: str) -> str:
    file_format = file_format.lower()
    if file_format not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported format '{file_format}'. Use one of {SUPPORTED_FORMATS}")
    return file_format


class LandingZoneSource(IncrementalSource):
    """Directory of data files where each file is one immutable batch.

    Files are ingested in lexical order of their path relative to the landing
    directory. Names starting with ``.`` or ``_`` (temporary files, markers
    such as ``_SUCCESS``) are ignored.

    Args:
        path: Landing directory
        format: ``json`` (JSON lines unless ``read_options`` says otherwise),
            ``csv``, ``parquet`` or ``avro``
        pattern: Glob pattern selecting files
        recursive: Also match files in subdirectories
        read_options: Extra keyword arguments for the pandas reader
    """

    def __init__(
        self,
        path: Union[str, Path],
        format: str = "json",
        pattern: str = "*",
        recursive: bool = False,
        read_options: Optional[Dict[str, Any]] = None,
    ):
        self.path = Path(path)
        self.format = _validate_format(format)
        self.pattern = pattern
        self.recursive = recursive
        self.read_options = dict(read_options or {})

    def describe(self) -> str:
        return f"{self.format}:{self.path}"

    def list_batches(self) -> List[str]:
        if not self.path.is_dir():
            raise UpstreamUnavailableError(
                self.describe(), f"Landing zone {self.path} does not exist or is not a directory"
            )

        matches = self.path.rglob(self.pattern) if self.recursive else self.path.glob(self.pattern)
        keys = sorted(
            match.relative_to(self.path).as_posix()
            for match in matches
            if match.is_file() and not match.name.startswith((".", "_"))
        )
        logger.debug(
            "sources.landing_zone.listed",
            extra=sanitize_extras({"source": self.describe(), "batches": len(keys)}),
        )
        return keys

    def read_batch(self, key: str) -> pd.DataFrame:
        return _read_or_raise(self.describe(), self.path / key, self.format, self.read_options)


class InMemoryLandingZone(IncrementalSource):
    """Process-local landing zone, convenient for tests and demos.

    ``set_available(False)`` makes every access raise
    :class:`UpstreamUnavailableError`, and ``remove`` simulates a purged batch.
    """

    def __init__(self, name: str = "memory"):
        self.name = name
        self._batches: "OrderedDict[str, pd.DataFrame]" = OrderedDict()
        self._lock = threading.Lock()
        self._counter = 0
        self._available = True

    def describe(self) -> str:
        return f"memory:{self.name}"

    def append(self, records: Union[pd.DataFrame, Iterable[Dict[str, Any]]], key: Optional[str] = None) -> str:
        frame = records.copy() if isinstance(records, pd.DataFrame) else pd.DataFrame(list(records))
        with self._lock:
            self._counter += 1
            key = key or f"batch-{self._counter:06d}"
            if key in self._batches:
                raise ValueError(f"Batch '{key}' already exists in {self.describe()}")
            self._batches[key] = frame
        return key

    def remove(self, key: str) -> None:
        with self._lock:
            del self._batches[key]

    def set_available(self, available: bool) -> None:
        self._available = available

    def _check_available(self) -> None:
        if not self._available:
            raise UpstreamUnavailableError(self.describe(), f"{self.describe()} is unavailable")

    def list_batches(self) -> List[str]:
        self._check_available()
        with self._lock:
            return list(self._batches)

    def read_batch(self, key: str) -> pd.DataFrame:
        self._check_available()
        with self._lock:
            return self._batches[key].copy()


class FileSnapshotSource(SnapshotSource):
    """Reference table stored as one file or a directory of files."""

    def __init__(
        self,
        path: Union[str, Path],
        format: str = "json",
        read_options: Optional[Dict[str, Any]] = None,
    ):
        self.path = Path(path)
        self.format = _validate_format(format)
        self.read_options = dict(read_options or {})

    def describe(self) -> str:
        return f"{self.format}:{self.path}"

    def current_snapshot(self) -> pd.DataFrame:
        if self.path.is_file():
            return _read_or_raise(self.describe(), self.path, self.format, self.read_options)

        if not self.path.is_dir():
            raise UpstreamUnavailableError(self.describe(), f"Reference data {self.path} does not exist")

        files = sorted(
            match for match in self.path.iterdir()
            if match.is_file() and not match.name.startswith((".", "_"))
        )
        if not files:
            raise UpstreamUnavailableError(self.describe(), f"Reference directory {self.path} is empty")

        frames = [_read_or_raise(self.describe(), file, self.format, self.read_options) for file in files]
        return pd.concat(frames, ignore_index=True)


class FrameSnapshotSource(SnapshotSource):
    """Reference table backed by a DataFrame or a zero-argument loader returning one."""

    def __init__(self, frame: Union[pd.DataFrame, Callable[[], pd.DataFrame]], name: str = "frame"):
        self.name = name
        self._frame = frame
        self._lock = threading.Lock()

    def describe(self) -> str:
        return f"frame:{self.name}"

    def set_frame(self, frame: Union[pd.DataFrame, Callable[[], pd.DataFrame]]) -> None:
        with self._lock:
            self._frame = frame

    def current_snapshot(self) -> pd.DataFrame:
        with self._lock:
            frame = self._frame
        if isinstance(frame, pd.DataFrame):
            return frame.copy()
        try:
            return frame()
        except OSError as exc:
            raise UpstreamUnavailableError(self.describe(), f"Loader for {self.describe()} failed", cause=exc) from exc
