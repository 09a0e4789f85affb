# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the flowrunner test suite.

This module provides:
- Graph builders for compact node/edge definitions
- Fake collaborators: provider adapter, email sender, sleep, HTTP transport
- Executor services and engines wired to those fakes
- Temporary run databases

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from flowrunner.core.config import EngineSettings
from flowrunner.core.executors import ExecutorServices
from flowrunner.core.graph_engine import WorkflowEngine
from flowrunner.core.graph_schema import Edge, Node, WorkflowGraph
from flowrunner.core.mailer import SendResult
from flowrunner.core.state import Database
from flowrunner.providers import GenerateParams, GenerateResult, ProviderAdapter, ProviderRegistry


# =============================================================================
# Graph Builders
# =============================================================================


def make_node(node_id: str, node_type: str, label: str = "", **config: Any) -> Node:
    return Node(id=node_id, type=node_type, data={"label": label, "config": config})


def make_edge(source: str, target: str, handle: str | None = None, branch: str | None = None) -> Edge:
    data = {"branch": branch} if branch else None
    return Edge(source=source, target=target, source_handle=handle, data=data)


@pytest.fixture
def node() -> Callable[..., Node]:
    """Factory: ``node("ai", "aiAgent", prompt="{{input}}")``."""
    return make_node


@pytest.fixture
def edge() -> Callable[..., Edge]:
    """Factory: ``edge("c", "e", handle="true")``."""
    return make_edge


@pytest.fixture
def graph() -> Callable[..., WorkflowGraph]:
    """Factory building a WorkflowGraph from node and edge lists."""

    def _graph(nodes: list[Node], edges: list[Edge] | None = None) -> WorkflowGraph:
        return WorkflowGraph(nodes=nodes, edges=edges or [])

    return _graph


# =============================================================================
# Fake Collaborators
# =============================================================================


class FakeAdapter(ProviderAdapter):
    """Provider adapter returning canned text and recording every request."""

    provider = "anthropic"

    def __init__(self, content: str = "generated text", input_tokens: int = 10, output_tokens: int = 5):
        super().__init__("test-key")
        self.content = content
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls: list[GenerateParams] = []
        self.error: Exception | None = None

    def _request(self, params):
        raise NotImplementedError

    def _parse(self, data):
        raise NotImplementedError

    async def generate_text(self, params: GenerateParams) -> GenerateResult:
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        return GenerateResult(
            content=self.content,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
        )


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def providers(fake_adapter: FakeAdapter) -> ProviderRegistry:
    """Registry where only Anthropic is available, served by the fake adapter."""
    return ProviderRegistry(environ={}, adapters={"anthropic": fake_adapter})


@pytest.fixture
def email_sender() -> AsyncMock:
    sender = AsyncMock()
    sender.send.return_value = SendResult(success=True, message_id="msg-123")
    return sender


@pytest.fixture
def fake_sleep() -> AsyncMock:
    """Stand-in for asyncio.sleep so delay nodes return immediately."""
    return AsyncMock()


class HTTPRecorder:
    """httpx.MockTransport handler that records requests and replays a response."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.json_body: Any = {"ok": True}
        self.text_body: str | None = None
        self.error: Exception | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.text_body is not None:
            return httpx.Response(
                self.status_code, text=self.text_body, headers={"content-type": "text/plain"}
            )
        return httpx.Response(self.status_code, json=self.json_body)

    @property
    def last_json(self) -> Any:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def http() -> HTTPRecorder:
    return HTTPRecorder()


@pytest_asyncio.fixture
async def http_client(http: HTTPRecorder):
    async with httpx.AsyncClient(transport=httpx.MockTransport(http)) as client:
        yield client


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings()


@pytest.fixture
def services(
    providers: ProviderRegistry,
    email_sender: AsyncMock,
    fake_sleep: AsyncMock,
    settings: EngineSettings,
) -> ExecutorServices:
    """Services with fake collaborators; webhook calls use a fresh client per call."""
    return ExecutorServices(
        providers=providers,
        email_sender=email_sender,
        sleep=fake_sleep,
        settings=settings,
    )


@pytest.fixture
def engine(services: ExecutorServices) -> WorkflowEngine:
    return WorkflowEngine(services)


@pytest.fixture
def temp_db(tmp_path: Path) -> Database:
    """Create temporary database for tests."""
    return Database(tmp_path / "state.db")
