"""Shared fixtures: settings in a temp dir, fake subscriptions and a mock Caido app."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from caido_mcp.config import Settings
from caido_mcp.dispatcher import ToolDispatcher
from caido_mcp.graphql import GraphQLClient
from caido_mcp.invoker import FunctionInvoker
from caido_mcp.models import Credential
from caido_mcp.session import AuthSession
from caido_mcp.subscription import SubscriptionFailed, TokenReceived
from caido_mcp.token_store import TokenStore
from caido_mcp.tools import load_catalog
from mock_caido.server import MockCaido, create_app

BASE_URL = "http://caido.test"


class FakeSubscription:
    """Stands in for TokenSubscription; tests push events by hand."""

    def __init__(self, settings: Settings, request_id: str, generation: int, events: asyncio.Queue, auth_token: Optional[str] = None) -> None:
        self.settings = settings
        self.request_id = request_id
        self.generation = generation
        self.events = events
        self.auth_token = auth_token
        self.armed = asyncio.Event()
        self.armed.set()
        self.cancelled = False

    async def run(self) -> None:
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise

    def emit_token(self, token: Dict[str, Any]) -> None:
        self.events.put_nowait(TokenReceived(self.request_id, self.generation, Credential.model_validate(token)))

    def emit_error(self, reason: str = "boom") -> None:
        self.events.put_nowait(SubscriptionFailed(self.request_id, self.generation, reason))


class SubscriptionRecorder:
    def __init__(self) -> None:
        self.instances: List[FakeSubscription] = []

    def __call__(self, *args: Any, **kwargs: Any) -> FakeSubscription:
        sub = FakeSubscription(*args, **kwargs)
        self.instances.append(sub)
        return sub


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(base_url=BASE_URL, token_dir=tmp_path / "tokens", subscribe_timeout=1.0)


@pytest.fixture
def store(settings: Settings) -> TokenStore:
    return TokenStore(settings)


@pytest.fixture
def subscriptions() -> SubscriptionRecorder:
    return SubscriptionRecorder()


@pytest.fixture
def caido() -> MockCaido:
    return MockCaido(base_url=BASE_URL)


def graphql_handler(responses: Dict[str, Any], calls: List[Dict[str, Any]]) -> Callable[[httpx.Request], httpx.Response]:
    """Build a MockTransport handler answering GraphQL operations by name.

    Values are a JSON body, or a ``(status, body)`` tuple.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        calls.append({"url": str(request.url), "body": body, "headers": dict(request.headers)})
        for op, resp in responses.items():
            if op in (body.get("query") or "") or op in str(request.url):
                if isinstance(resp, tuple):
                    return httpx.Response(resp[0], json=resp[1])
                return httpx.Response(200, json=resp)
        return httpx.Response(404, json={"error": "unexpected"})

    return handler


def make_dispatcher(settings: Settings, http: httpx.AsyncClient, subscriptions: Optional[SubscriptionRecorder] = None) -> ToolDispatcher:
    graphql = GraphQLClient(settings, http=http)
    session = AuthSession(settings, graphql, TokenStore(settings), subscription_factory=subscriptions or SubscriptionRecorder())
    return ToolDispatcher(session, FunctionInvoker(session, graphql), load_catalog())


def asgi_client(caido: MockCaido) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=create_app(caido)), base_url=BASE_URL)
