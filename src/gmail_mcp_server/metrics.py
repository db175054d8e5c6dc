"""Prometheus metrics for token status, tool calls and sessions."""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from .models import Credential


class ServerMetrics:
    """Metrics bound to their own registry so each app instance is isolated."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.token_last_refreshed = Gauge(
            "gmail_mcp_token_last_refreshed_timestamp",
            "Unix time the current access token was obtained",
            registry=self.registry,
        )
        self.token_expires_at = Gauge(
            "gmail_mcp_token_expires_at_timestamp",
            "Unix time the current access token expires",
            registry=self.registry,
        )
        self.token_refreshes = Counter(
            "gmail_mcp_token_refreshes",
            "Token refresh attempts against the OAuth provider",
            ["outcome"],
            registry=self.registry,
        )
        self.tool_calls = Counter(
            "gmail_mcp_tool_calls",
            "Tool invocations by tool and outcome",
            ["tool", "outcome"],
            registry=self.registry,
        )
        self.tool_call_duration = Histogram(
            "gmail_mcp_tool_call_duration_seconds",
            "Tool invocation latency",
            ["tool"],
            registry=self.registry,
        )
        self.active_sessions = Gauge(
            "gmail_mcp_active_sessions",
            "Live MCP sessions by transport",
            ["transport"],
            registry=self.registry,
        )
        self.sessions_reaped = Counter(
            "gmail_mcp_sessions_reaped",
            "Sessions removed after the idle timeout",
            registry=self.registry,
        )

    def observe_credential(self, credential: Credential) -> None:
        self.token_last_refreshed.set(credential.issued_at.timestamp())
        self.token_expires_at.set(credential.expires_at.timestamp())

    def render(self) -> tuple[bytes, str]:
        """Exposition body and its content type."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
