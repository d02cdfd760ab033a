"""
OpenTelemetry tracing for the outreach messaging pipeline.

Spans cover the provider-facing and reconciliation paths:
- Google token refresh
- Gmail send / list / fetch / modify
- Outbound sends, reply polling runs and cooldown sweeps

Recipient addresses, tokens and message bodies are masked before they are
attached to a span.
"""

import os
import re
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

_SECRET_KEYS = ("token", "secret", "key", "password")
_CONTENT_KEYS = ("body", "content", "snippet")
_EMAIL_KEYS = ("email", "recipient", "sender")


def setup_tracing(service_name: str = "outreach-backend") -> TracerProvider:
    """
    Install a tracer provider with the exporter named by the environment.

    Environment variables:
    - OTEL_TRACES_EXPORTER: "otlp", "console" or "none" (default: none)
    - OTEL_EXPORTER_OTLP_ENDPOINT: collector endpoint for "otlp"
    """
    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": "0.1.0",
        }
    )

    provider = TracerProvider(resource=resource)

    exporter_type = os.getenv("OTEL_TRACES_EXPORTER", "none").lower()

    if exporter_type == "otlp":
        endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True))
        )
    elif exporter_type == "console":
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    return provider


def get_tracer(name: str = __name__) -> trace.Tracer:
    """Get a tracer instance for creating spans."""
    return trace.get_tracer(name)


def mask_token(token: str | None) -> str:
    """Keep the first 8 and last 4 characters of a token."""
    if not token:
        return "<none>"

    if len(token) <= 12:
        return "***"

    return f"{token[:8]}...{token[-4:]}"


def mask_email(email: str | None) -> str:
    """
    Mask an email address for PII protection.

    Shows the first character and the domain, e.g. ``a****@co.com``.
    """
    if not email:
        return "<none>"

    match = re.match(r"^([^@])([^@]*)(@.+)$", email)
    if match:
        first_char, rest, domain = match.groups()
        return f"{first_char}{'*' * min(len(rest), 5)}{domain}"

    return "***@***"


def sanitize_message_content(content: str | None, max_length: int = 100) -> str:
    """Truncate content and blank out long token-like runs."""
    if not content:
        return "<empty>"

    if len(content) > max_length:
        content = content[:max_length] + "..."

    return re.sub(r'[A-Za-z0-9_-]{40,}', '***TOKEN***', content)


def safe_span_attributes(**kwargs: Any) -> dict[str, Any]:
    """
    Build span attributes, masking sensitive values by key name.

    - *token*, *secret*, *key*, *password* -> mask_token
    - *email*, *recipient*, *sender* -> mask_email
    - *body*, *content*, *snippet* -> sanitize_message_content

    None values are dropped; non-primitive values are stringified.
    """
    sanitized = {}

    for key, value in kwargs.items():
        if value is None:
            continue

        lowered = key.lower()
        if any(k in lowered for k in _SECRET_KEYS):
            sanitized[key] = mask_token(str(value))
        elif any(k in lowered for k in _EMAIL_KEYS):
            sanitized[key] = mask_email(str(value))
        elif any(k in lowered for k in _CONTENT_KEYS):
            sanitized[key] = sanitize_message_content(str(value))
        elif isinstance(value, (str, int, float, bool)):
            sanitized[key] = value
        else:
            sanitized[key] = str(value)

    return sanitized
