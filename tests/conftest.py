"""Shared fixtures: engines wired to in-memory stores and mocked HTTP APIs."""

from typing import Any, Callable, Optional

import httpx
import pytest
from pydantic import SecretStr

import apiflow.persistence as persistence
from apiflow import (
    ConnectionAuth,
    ConnectionClient,
    InMemoryConnectionResolver,
    InMemoryWorkflowSource,
    RetryPolicy,
    WorkflowDefinition,
    WorkflowEngine,
)
from apiflow.config import ApiflowConfig, EngineConfig
from apiflow.persistence import InMemoryExecutionStore

BASE_URL = "https://api.test"
API_KEY = "sk-test-0123456789"


def _build_workflow(*steps: dict, **fields: Any) -> WorkflowDefinition:
    data = {"id": "wf-test", "name": "Test workflow", "connection_id": "api"}
    data.update(fields)
    data["steps"] = list(steps)
    return WorkflowDefinition.model_validate(data)


def _api_step(name: str, path: str, method: str = "GET", **config: Any) -> dict:
    return {"name": name, "type": "api_call", "config": {"method": method, "path": path, **config}}


@pytest.fixture
def build_workflow():
    return _build_workflow


@pytest.fixture
def api_step():
    return _api_step


@pytest.fixture
def api_key() -> str:
    return API_KEY


@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_ms=1, max_delay_ms=5)


@pytest.fixture
def make_engine(store, fast_retry):
    """Build a ``WorkflowEngine`` whose ``api`` connection is served by ``handler``."""

    def _make(
        handler: Callable[[httpx.Request], Any],
        *,
        engine_config: Optional[EngineConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        workflows: Optional[list[WorkflowDefinition]] = None,
    ) -> WorkflowEngine:
        client = ConnectionClient(
            "api",
            base_url=BASE_URL,
            auth=ConnectionAuth(type="api_key", secret=SecretStr(API_KEY)),
            transport=httpx.MockTransport(handler),
        )
        engine = WorkflowEngine(
            store=store,
            workflows=InMemoryWorkflowSource(workflows or []),
            connections=InMemoryConnectionResolver({"api": client}),
            config=ApiflowConfig(engine=engine_config or EngineConfig()),
            retry_policy=retry_policy or fast_retry,
        )
        return engine

    return _make


@pytest.fixture
def cli_store():
    """Install an in-memory store as the process-wide store used by the CLI."""
    store = InMemoryExecutionStore()
    persistence._store_instance = store
    yield store
    persistence._store_instance = None
