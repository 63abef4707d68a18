"""Entry points for planning and running pipelines."""

from typing import Iterable, List, Optional, Union

from liveflow.logging import get_logger, set_logging_context, setup_logging
from liveflow.monitoring import MetricsCollector
from liveflow.pipeline import DependencyResolver, ExecutionPlan, PipelineDefinition, PipelineExecutor, resolve
from liveflow.settings import LiveFlowSettings, get_settings
from liveflow.storage import TableStore, create_store
from liveflow.types import PipelineRunResult

logger = get_logger(__name__)

_metrics_collector: Optional[MetricsCollector] = None
_default_store: Optional[TableStore] = None


def _get_metrics() -> MetricsCollector:
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(get_settings())
    return _metrics_collector


def _get_store() -> TableStore:
    global _default_store
    if _default_store is None:
        _default_store = create_store(get_settings())
    return _default_store


def configure_logging(settings: Optional[LiveFlowSettings] = None) -> None:
    """Apply JSON logging at the configured level and tag records with the environment."""
    settings = settings or get_settings()
    setup_logging(settings.log_level)
    set_logging_context(environment=settings.environment)


def validate_pipeline(pipeline: PipelineDefinition) -> List[str]:
    """Validate a pipeline; returns its execution order."""
    return resolve(pipeline)


def get_execution_plan(
    pipeline: PipelineDefinition,
    tables: Optional[Iterable[str]] = None,
) -> ExecutionPlan:
    """Stages in which the pipeline (or ``tables`` and their upstreams) would run."""
    return DependencyResolver(pipeline).plan(set(tables) if tables is not None else None)


def run_pipeline(
    pipeline: PipelineDefinition,
    *,
    store: Optional[TableStore] = None,
    tables: Optional[Iterable[str]] = None,
    full_refresh: Union[bool, Iterable[str]] = False,
    run_id: Optional[str] = None,
) -> PipelineRunResult:
    """Run a pipeline once with the configured settings.

    Without an explicit store the configured one is built once and shared by
    later calls, so checkpoints carry over between runs.
    """
    logger.info("api.run_pipeline", extra={"pipeline": pipeline.name, "full_refresh": bool(full_refresh)})
    if store is None:
        store = _get_store()
    executor = PipelineExecutor(pipeline, store=store, settings=get_settings(), metrics=_get_metrics())
    return executor.run(run_id=run_id, tables=tables, full_refresh=full_refresh)
