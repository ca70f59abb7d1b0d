from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List

LOGGER_NAME = "osm_mcp_server"


class StructuredFormatter(logging.Formatter):
    """Renders each record as one JSON object per line.

    ``session_id``, ``tool`` and ``duration_ms`` come from ``extra=`` and
    default to empty strings. Tracebacks go into ``exc`` so a line never spans
    more than one physical line.
    """

    FIELDS = ("session_id", "tool", "duration_ms")

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
        }
        for name in self.FIELDS:
            payload[name] = getattr(record, name, "")
        payload["msg"] = record.getMessage()
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logger(level_name: str = "INFO") -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logger.setLevel(level)
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger


@dataclass
class ToolMetrics:
    calls: int = 0
    errors: int = 0
    total_latency_ms: float = 0.0
    max_latency_ms: float = 0.0

    def observe(self, duration_ms: float, error: bool) -> None:
        duration_ms = float(duration_ms)
        self.calls += 1
        self.total_latency_ms += duration_ms
        self.max_latency_ms = max(self.max_latency_ms, duration_ms)
        if error:
            self.errors += 1

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.calls if self.calls else 0.0


class InMemoryMetrics:
    """Per-tool call counters, fed by the tool handlers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tools: Dict[str, ToolMetrics] = {}

    def record(self, tool: str, duration_ms: float, error: bool) -> None:
        with self._lock:
            self._tools.setdefault(tool, ToolMetrics()).observe(duration_ms, error)

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            return {
                name: {
                    "calls": float(m.calls),
                    "errors": float(m.errors),
                    "avg_latency_ms": m.avg_latency_ms,
                    "max_latency_ms": m.max_latency_ms,
                }
                for name, m in self._tools.items()
            }


class SessionMetrics:
    """Counts SSE sessions; `session_closed` is meant to be a channel close subscriber."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.opened = 0
        self.closed = 0

    def session_opened(self, *_: Any) -> None:
        with self._lock:
            self.opened += 1

    def session_closed(self, *_: Any) -> None:
        with self._lock:
            self.closed += 1

    @property
    def active(self) -> int:
        with self._lock:
            return self.opened - self.closed


def format_prometheus(sessions: SessionMetrics, tools: InMemoryMetrics) -> str:
    """Render session gauges and per-tool counters in Prometheus text format."""
    lines: List[str] = [
        "# HELP mcp_server_healthy MCP server health status",
        "# TYPE mcp_server_healthy gauge",
        "mcp_server_healthy 1",
        "# HELP mcp_sessions_active Currently registered SSE sessions",
        "# TYPE mcp_sessions_active gauge",
        f"mcp_sessions_active {sessions.active}",
        "# HELP mcp_sessions_opened_total SSE sessions opened since start",
        "# TYPE mcp_sessions_opened_total counter",
        f"mcp_sessions_opened_total {sessions.opened}",
        "# HELP mcp_sessions_closed_total SSE sessions closed since start",
        "# TYPE mcp_sessions_closed_total counter",
        f"mcp_sessions_closed_total {sessions.closed}",
    ]

    snapshot = tools.snapshot()
    if snapshot:
        lines.append("# HELP mcp_tool_calls_total Total number of tool calls")
        lines.append("# TYPE mcp_tool_calls_total counter")
        for tool_name, m in snapshot.items():
            lines.append(f'mcp_tool_calls_total{{tool="{tool_name}"}} {int(m["calls"])}')
        lines.append("# HELP mcp_tool_errors_total Total number of tool errors")
        lines.append("# TYPE mcp_tool_errors_total counter")
        for tool_name, m in snapshot.items():
            lines.append(f'mcp_tool_errors_total{{tool="{tool_name}"}} {int(m["errors"])}')
        lines.append("# HELP mcp_tool_avg_latency_ms Average tool latency in milliseconds")
        lines.append("# TYPE mcp_tool_avg_latency_ms gauge")
        for tool_name, m in snapshot.items():
            lines.append(f'mcp_tool_avg_latency_ms{{tool="{tool_name}"}} {m["avg_latency_ms"]}')
        lines.append("# HELP mcp_tool_max_latency_ms Slowest tool call in milliseconds")
        lines.append("# TYPE mcp_tool_max_latency_ms gauge")
        for tool_name, m in snapshot.items():
            lines.append(f'mcp_tool_max_latency_ms{{tool="{tool_name}"}} {m["max_latency_ms"]}')

    return "\n".join(lines) + "\n"
