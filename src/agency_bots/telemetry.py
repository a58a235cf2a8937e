from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Generator

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None) -> Generator[Span, None, None]:
    tracer = trace.get_tracer("agency_bots")
    with tracer.start_as_current_span(name) as span:
        if attributes:
            span_set_attributes(span, attributes)
        yield span


def span_set_attributes(span: Span, attributes: dict[str, Any]) -> None:
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, (str, bool, int, float)):
            span.set_attribute(key, value)
            continue
        span.set_attribute(key, str(value))


def span_record_error(span: Span, error: Exception, failure_type: str) -> None:
    span.set_attribute("failure_type", failure_type)
    span.record_exception(error)
    span.set_status(Status(StatusCode.ERROR, str(error)))


def telemetry_tags(
    *,
    tenant_id: str | None = None,
    actor_id: str | None = None,
    bot_id: str | None = None,
    conversation_id: str | None = None,
    plan: str | None = None,
    environment: str | None = None,
    latency_ms: int | None = None,
    failure_type: str | None = None,
) -> dict[str, str | int | float]:
    tags: dict[str, str | int | float | None] = {
        "tenant_id": tenant_id,
        "actor_id": actor_id,
        "bot_id": bot_id,
        "conversation_id": conversation_id,
        "plan": plan,
        "environment": environment,
        "latency_ms": latency_ms,
        "failure_type": failure_type,
    }
    return {key: value for key, value in tags.items() if value is not None}
