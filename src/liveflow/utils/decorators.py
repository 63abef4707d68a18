"""Function decorators for tracing and retrying pipeline work."""

import functools
import time
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

from opentelemetry.trace import SpanKind, Status, StatusCode

from liveflow.logging import get_logger
from liveflow.telemetry import get_tracer

F = TypeVar('F', bound=Callable[..., Any])
T = TypeVar('T')

logger = get_logger(__name__)


def traced(
    span_name: Optional[str] = None,
    *,
    kind: SpanKind = SpanKind.INTERNAL,
    attributes: Optional[Dict[str, Any]] = None,
    attribute_getter: Optional[Callable[..., Optional[Dict[str, Any]]]] = None,
) -> Callable[[F], F]:
    """Instrument a function with an OpenTelemetry span.

    Args:
        span_name: Optional explicit span name. Defaults to module-qualified function name.
        kind: Span kind, defaults to INTERNAL.
        attributes: Static span attributes to attach.
        attribute_getter: Callable receiving the call arguments and returning
            additional attributes at call time.
    """

    def decorator(func: F) -> F:

        def _collect_attributes(args: tuple, kwargs: dict) -> Dict[str, Any]:
            collected: Dict[str, Any] = {}
            if attributes:
                collected.update({k: v for k, v in attributes.items() if v is not None})

            if attribute_getter:
                dynamic_attrs = attribute_getter(*args, **kwargs)
                if dynamic_attrs:
                    collected.update({k: v for k, v in dynamic_attrs.items() if v is not None})

            return collected

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            tracer = get_tracer()
            name = span_name or f"{func.__module__}.{func.__qualname__}"

            with tracer.start_as_current_span(name, kind=kind) as span:
                for key, value in _collect_attributes(args, kwargs).items():
                    span.set_attribute(key, value)

                try:
                    return func(*args, **kwargs)
                except Exception as exc:
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, str(exc)))
                    raise

        return wrapper  # type: ignore[return-value]

    return decorator


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    retry_on: Optional[Tuple[Type[Exception], ...]] = None,
    retry_condition: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for retrying operations with exponential backoff.

    The delay between attempts follows
    ``min(initial_delay * (exponential_base ** attempt), max_delay)``.

    Args:
        max_retries: Maximum number of retry attempts.
        initial_delay: Initial delay in seconds between retries.
        max_delay: Maximum delay in seconds.
        exponential_base: Base for exponential backoff calculation.
        retry_on: Exception types to retry on. If None, any exception qualifies.
        retry_condition: Function deciding from the exception whether to retry.
        on_retry: Called with the failed attempt number (1-based) and the
            exception before sleeping.

    Raises:
        The last exception encountered if all attempts fail or the exception
        is not retryable.

    Example:
        >>> @retry_with_backoff(
        ...     max_retries=2,
        ...     retry_condition=lambda exc: getattr(exc, "is_retryable", False),
        ... )
        ... def read_landing_zone():
        ...     return source.list_batches()
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    should_retry = retry_on is None or isinstance(e, retry_on)
                    if should_retry and retry_condition:
                        should_retry = retry_condition(e)

                    if not should_retry or attempt == max_retries:
                        if should_retry:
                            logger.error(
                                "retry.exhausted",
                                extra={"function": func.__name__, "attempts": attempt + 1},
                            )
                        raise

                    logger.warning(
                        "retry.attempt_failed",
                        extra={
                            "function": func.__name__,
                            "attempt": attempt + 1,
                            "delay_seconds": delay,
                            "error": str(e),
                        },
                    )
                    if on_retry:
                        on_retry(attempt + 1, e)
                    time.sleep(delay)
                    delay = min(delay * exponential_base, max_delay)

            raise RuntimeError("unreachable")  # pragma: no cover

        return wrapper

    return decorator
