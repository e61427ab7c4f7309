"""
Pytest configuration and fixtures for usage-telemetry tests.
"""

import asyncio
import os
from typing import Any, Dict, List, Tuple

import pytest

from usage_telemetry.errors import TelemetryError, TelemetryErrorType
from usage_telemetry.preferences import DISABLE_ENV_VARS
from usage_telemetry.schemas import TelemetryEvent, WorkflowTelemetry
from usage_telemetry.settings import SETTINGS_FILE_ENV_VAR, TelemetrySettings


def pytest_configure(config):
    """
    Make sure the developer's environment cannot switch telemetry off or
    redirect its settings underneath the tests.
    """
    for name in (*DISABLE_ENV_VARS, SETTINGS_FILE_ENV_VAR):
        os.environ.pop(name, None)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """In-memory backend that records inserts and can be told to fail."""

    def __init__(self, failures: int = 0, always_fail: bool = False):
        self.calls: List[Tuple[str, List[Dict[str, Any]]]] = []
        self.failures = failures
        self.always_fail = always_fail

    async def insert(self, table: str, records: List[Dict[str, Any]]) -> None:
        self.calls.append((table, records))
        if self.always_fail or self.failures > 0:
            self.failures -= 1
            raise TelemetryError(
                TelemetryErrorType.NETWORK_ERROR, "backend unavailable", retryable=True
            )

    def records_for(self, table: str) -> List[Dict[str, Any]]:
        return [record for name, records in self.calls if name == table for record in records]


class BlockingBackend(FakeBackend):
    """Backend whose inserts wait until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def insert(self, table: str, records: List[Dict[str, Any]]) -> None:
        self.entered.set()
        await self.release.wait()
        await super().insert(table, records)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def backend_factory():
    return FakeBackend


@pytest.fixture
def blocking_backend():
    return BlockingBackend()


@pytest.fixture
def fast_settings():
    """Settings without backoff sleeps or process signal handlers."""
    return TelemetrySettings(
        skip_retry_delays=True,
        install_signal_handlers=False,
        operation_timeout=1.0,
    )


@pytest.fixture
def make_event():
    def factory(index: int = 0, name: str = "tool_used") -> TelemetryEvent:
        return TelemetryEvent(
            user_id="user-1",
            event=name,
            properties={"tool": f"tool_{index}", "success": True, "duration": index},
        )

    return factory


@pytest.fixture
def make_workflow():
    def factory(workflow_hash: str = "abc123") -> WorkflowTelemetry:
        return WorkflowTelemetry(
            user_id="user-1",
            workflow_hash=workflow_hash,
            node_count=1,
            node_types=["n8n-nodes-base.set"],
            has_trigger=False,
            has_webhook=False,
            complexity="simple",
            sanitized_workflow={"nodes": [{"type": "n8n-nodes-base.set"}], "connections": {}},
        )

    return factory


@pytest.fixture
def sample_workflow():
    """Raw workflow as a host application would submit it."""
    return {
        "name": "Sync contacts",
        "nodes": [
            {
                "id": "1",
                "name": "Webhook",
                "type": "n8n-nodes-base.webhook",
                "parameters": {"path": "https://hooks.example.com/webhook/abc"},
            },
            {
                "id": "2",
                "name": "HTTP Request",
                "type": "n8n-nodes-base.httpRequest",
                "parameters": {
                    "url": "https://api.example.com/contacts",
                    "apiKey": "sk-abcdefghijklmnopqrstuvwx",
                    "options": {"timeout": 30},
                },
                "credentials": {"httpHeaderAuth": {"id": "7", "name": "Prod key"}},
            },
        ],
        "connections": {
            "Webhook": {"main": [[{"node": "HTTP Request", "type": "main", "index": 0}]]}
        },
        "pinData": {"Webhook": [{"json": {"email": "someone@example.com"}}]},
    }
