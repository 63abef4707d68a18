"""Pipeline execution.

The executor walks the execution plan stage by stage. Tables of a stage are
independent of each other and run concurrently on a thread pool; a table
starts only once all of its upstream tables finished healthy, otherwise it
is skipped and keeps its previous state. A failure is contained to the
failing table and its dependents.

Every table commits through a commit token. Cancelling the run or reaching
the stage deadline expires the tokens of unfinished tables, so their
commit is refused and their checkpoint stays where it was. A commit that
already started is allowed to finish.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Union

from liveflow.common.exceptions import (
    ErrorCode,
    LiveFlowError,
    RunCancelledError,
    StageTimeoutError,
)
from liveflow.constants import TableRunStatus
from liveflow.logging import get_logger
from liveflow.monitoring import MetricsCollector
from liveflow.observability.context import RunContext, run_scope, sanitize_extras, table_scope
from liveflow.pipeline.definition import PipelineDefinition, TableDefinition
from liveflow.pipeline.materializer import TableMaterializer
from liveflow.pipeline.resolver import DependencyResolver
from liveflow.pipeline.types import ExecutionPlan, ExecutionStage
from liveflow.settings import LiveFlowSettings, get_settings
from liveflow.storage import TableStore, create_store
from liveflow.types.results import PipelineRunResult, TableRunResult
from liveflow.utils.decorators import retry_with_backoff

logger = get_logger(__name__)


class _CommitToken:
    """Decides, once, whether a table may still commit.

    The store calls :meth:`allow_commit` while holding its commit lock; the
    executor calls :meth:`expire` on timeout or cancellation. Whichever comes
    first wins.
    """

    def __init__(self, cancel_event: threading.Event):
        self._cancel_event = cancel_event
        self._lock = threading.Lock()
        self._committing = False
        self._expired = False

    @property
    def is_active(self) -> bool:
        with self._lock:
            return not self._expired and not self._cancel_event.is_set()

    def allow_commit(self) -> bool:
        with self._lock:
            if self._expired or self._cancel_event.is_set():
                return False
            self._committing = True
            return True

    def expire(self) -> bool:
        """Refuse future commits; False if a commit is already under way."""
        with self._lock:
            if self._committing:
                return False
            self._expired = True
            return True

    @property
    def expired(self) -> bool:
        with self._lock:
            return self._expired


class PipelineExecutor:
    """Runs a pipeline definition against a table store.

    Args:
        pipeline: Pipeline to run; validated on construction
        store: Table store; built from ``settings.store`` when omitted
        settings: Execution, quality and store settings
        metrics: Collector receiving table outcomes

    Raises:
        PipelineDefinitionError: On construction, for an invalid graph
    """

    def __init__(
        self,
        pipeline: PipelineDefinition,
        store: Optional[TableStore] = None,
        settings: Optional[LiveFlowSettings] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.pipeline = pipeline
        self.settings = settings or get_settings()
        self.resolver = DependencyResolver(pipeline)
        self.order = self.resolver.resolve()

        self.store = store or create_store(self.settings)
        self.metrics = metrics or MetricsCollector(self.settings)
        self.materializer = TableMaterializer(self.store, self.settings, metrics=self.metrics)
        self._cancel_event = threading.Event()

        for table in pipeline:
            self.store.register_table(table.name, table.kind, table.table_properties)

        logger.info(
            "executor.initialized",
            extra=sanitize_extras({
                "pipeline": pipeline.name,
                "tables": len(pipeline),
                "max_workers": self.settings.execution.max_workers,
                "snapshot_policy": self.settings.execution.join_snapshot_policy,
            }),
        )

    def cancel(self) -> None:
        """Stop scheduling tables; in-flight tables are refused their commit."""
        self._cancel_event.set()
        logger.warning("executor.cancel_requested", extra={"pipeline": self.pipeline.name})

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def plan(self, tables: Optional[Iterable[str]] = None) -> ExecutionPlan:
        return self.resolver.plan(set(tables) if tables is not None else None)

    def run(
        self,
        run_id: Optional[str] = None,
        tables: Optional[Iterable[str]] = None,
        full_refresh: Union[bool, Iterable[str]] = False,
    ) -> PipelineRunResult:
        """Run the pipeline once.

        Args:
            run_id: Identifier of the run; generated when omitted
            tables: Tables to run, with their upstream tables; all when omitted
            full_refresh: True, or names of tables to reset together with
                everything downstream of them before running

        Returns:
            Outcome of every planned table
        """
        ctx = (
            RunContext(run_id=run_id, pipeline_name=self.pipeline.name)
            if run_id else RunContext.generate(self.pipeline.name)
        )
        self._cancel_event.clear()
        plan = self.plan(tables)
        result = PipelineRunResult(
            run_id=ctx.run_id,
            pipeline_name=self.pipeline.name,
            started_at=datetime.now(timezone.utc),
        )

        with run_scope(ctx, operation="liveflow.pipeline.run"):
            logger.info(
                "executor.run.start",
                extra=sanitize_extras({
                    "num_stages": len(plan.stages),
                    "tables": ",".join(plan.table_names),
                }),
            )
            if full_refresh:
                self._full_refresh(plan.table_names if full_refresh is True else list(full_refresh))

            pool = ThreadPoolExecutor(
                max_workers=self.settings.execution.max_workers,
                thread_name_prefix="liveflow",
            )
            try:
                for stage in plan.stages:
                    self._run_stage(stage, ctx, result, pool)
            finally:
                pool.shutdown(wait=False, cancel_futures=True)

            result.finished_at = datetime.now(timezone.utc)
            logger.info(
                "executor.run.finished",
                extra=sanitize_extras({
                    "succeeded": result.succeeded,
                    "failed_tables": ",".join(result.failed_tables),
                    "skipped_tables": ",".join(result.skipped_tables),
                }),
            )
        return result

    def _full_refresh(self, names: List[str]) -> None:
        targets: List[str] = []
        for name in names:
            for table in [name] + self.resolver.downstream_of(name):
                if table not in targets:
                    targets.append(table)
        for table in targets:
            self.store.reset(table)
        logger.info("executor.full_refresh", extra=sanitize_extras({"tables": ",".join(targets)}))

    def _run_stage(
        self,
        stage: ExecutionStage,
        ctx: RunContext,
        result: PipelineRunResult,
        pool: ThreadPoolExecutor,
    ) -> None:
        futures: Dict[Future, str] = {}
        tokens: Dict[str, _CommitToken] = {}

        for name in stage.tables:
            table = self.pipeline.get(name)
            blocked = [
                upstream for upstream in table.upstream_names
                if upstream in result.tables and not result.tables[upstream].succeeded
            ]
            if self.cancelled:
                self._record(ctx, result, TableRunResult(
                    table_name=name,
                    status=TableRunStatus.CANCELLED,
                    error=RunCancelledError(name).to_dict(),
                ))
            elif blocked:
                logger.warning(
                    "executor.table.skipped",
                    extra=sanitize_extras({"table_name": name, "blocked_by": ",".join(blocked)}),
                )
                self._record(ctx, result, TableRunResult(
                    table_name=name,
                    status=TableRunStatus.SKIPPED,
                    skipped_because=blocked,
                ))
            else:
                token = _CommitToken(self._cancel_event)
                tokens[name] = token
                futures[pool.submit(self._run_table, table, ctx, token)] = name

        if not futures:
            return

        timeout = self.settings.execution.stage_timeout_seconds
        started = time.monotonic()
        _, not_done = wait(futures, timeout=timeout)

        outcomes: Dict[str, TableRunResult] = {}
        for future in not_done:
            name = futures[future]
            if tokens[name].expire():
                future.cancel()
                outcomes[name] = TableRunResult(
                    table_name=name,
                    status=TableRunStatus.TIMED_OUT,
                    error=StageTimeoutError(name, timeout).to_dict(),
                    duration_seconds=time.monotonic() - started,
                )
        for future, name in futures.items():
            if name not in outcomes:
                # Includes commits already under way at the deadline.
                outcomes[name] = future.result()

        for name in stage.tables:
            if name in outcomes:
                self._record(ctx, result, outcomes[name])

    def _run_table(self, table: TableDefinition, ctx: RunContext, token: _CommitToken) -> TableRunResult:
        """Materialize one table with retries; never raises."""
        execution = self.settings.execution
        attempts = 0
        started = time.monotonic()

        with table_scope(ctx, table.name):
            logger.info("executor.table.start", extra=sanitize_extras({"kind": table.kind, "layer": table.layer}))

            def log_retry(failed_attempt: int, exc: Exception) -> None:
                logger.warning(
                    "executor.table.retry",
                    extra={
                        "attempt": failed_attempt,
                        "error_code": exc.error_code.value if isinstance(exc, LiveFlowError) else None,
                    },
                )

            @retry_with_backoff(
                max_retries=execution.max_retries,
                initial_delay=execution.retry_delay_seconds,
                retry_condition=lambda exc: getattr(exc, "is_retryable", False) and token.is_active,
                on_retry=log_retry,
            )
            def attempt() -> TableRunResult:
                nonlocal attempts
                attempts += 1
                if not token.is_active:
                    raise RunCancelledError(table.name)
                return self.materializer.materialize(table, run_id=ctx.run_id, guard=token.allow_commit)

            try:
                outcome = attempt()
            except RunCancelledError as exc:
                status = TableRunStatus.TIMED_OUT if token.expired else TableRunStatus.CANCELLED
                outcome = TableRunResult(table_name=table.name, status=status, error=exc.to_dict())
            except LiveFlowError as exc:
                outcome = TableRunResult(table_name=table.name, status=TableRunStatus.FAILED, error=exc.to_dict())
            except Exception as exc:
                error = LiveFlowError(
                    f"Table '{table.name}' failed: {exc}",
                    error_code=ErrorCode.EXECUTION_ERROR,
                    details={"table": table.name},
                    cause=exc,
                )
                outcome = TableRunResult(table_name=table.name, status=TableRunStatus.FAILED, error=error.to_dict())

            outcome.attempts = attempts
            outcome.duration_seconds = time.monotonic() - started

            event = "executor.table.finished" if outcome.succeeded else "executor.table.failed"
            log = logger.info if outcome.succeeded else logger.error
            log(event, extra=sanitize_extras({
                "status": outcome.status,
                "rows_written": outcome.rows_written,
                "commit_version": outcome.commit_version,
                "attempts": attempts,
                "error_code": (outcome.error or {}).get("error_code"),
            }))
            return outcome

    def _record(self, ctx: RunContext, result: PipelineRunResult, outcome: TableRunResult) -> None:
        result.tables[outcome.table_name] = outcome
        table = self.pipeline.get(outcome.table_name)
        self.metrics.record_table_run(
            outcome,
            pipeline=self.pipeline.name,
            run_id=ctx.run_id,
            layer=table.layer,
        )


__all__ = ["PipelineExecutor"]
