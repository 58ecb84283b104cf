from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

import websockets

from .config import Settings
from .graphql import CREATED_AUTHENTICATION_TOKEN, format_errors
from .models import Credential

logger = logging.getLogger(__name__)

SUBPROTOCOL = "graphql-transport-ws"
SUBSCRIPTION_ID = "1"


class ListenerState(str, Enum):
    connecting = "connecting"
    subscribed = "subscribed"
    token_received = "token_received"
    subscription_error = "subscription_error"
    completed = "completed"


@dataclass(frozen=True)
class TokenReceived:
    request_id: str
    generation: int
    credential: Credential


@dataclass(frozen=True)
class SubscriptionFailed:
    request_id: str
    generation: int
    reason: str


@dataclass(frozen=True)
class SubscriptionCompleted:
    request_id: str
    generation: int


AuthEvent = Union[TokenReceived, SubscriptionFailed, SubscriptionCompleted]


class TokenSubscription:
    """Listens for the token created for one authentication request.

    Speaks graphql-transport-ws against Caido's ``/ws/graphql`` endpoint and
    publishes exactly one terminal event onto ``events``. ``armed`` is set
    once ``connection_ack`` arrived and ``subscribe`` was sent, or the
    attempt failed. The protocol has no acknowledgement for ``subscribe``.
    """

    def __init__(
        self,
        settings: Settings,
        request_id: str,
        generation: int,
        events: "asyncio.Queue[AuthEvent]",
        auth_token: Optional[str] = None,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.settings = settings
        self.request_id = request_id
        self.generation = generation
        self.events = events
        self.auth_token = auth_token
        self.state = ListenerState.connecting
        self.armed = asyncio.Event()
        self._connect = connect

    @property
    def terminal(self) -> bool:
        return self.state not in (ListenerState.connecting, ListenerState.subscribed)

    def _connection_params(self) -> Dict[str, str]:
        if self.auth_token:
            return {"Authorization": f"Bearer {self.auth_token}"}
        return {}

    async def run(self) -> None:
        url = self.settings.ws_url
        logger.info("Starting background subscription at %s for requestId %s", url, self.request_id)
        try:
            async with self._connect(url, subprotocols=[SUBPROTOCOL]) as ws:
                await self._handshake(ws)
                await ws.send(
                    json.dumps(
                        {
                            "id": SUBSCRIPTION_ID,
                            "type": "subscribe",
                            "payload": {
                                "query": CREATED_AUTHENTICATION_TOKEN,
                                "variables": {"requestId": self.request_id},
                            },
                        }
                    )
                )
                self.state = ListenerState.subscribed
                self.armed.set()
                async for raw in ws:
                    if await self._handle(ws, raw):
                        return
            logger.info("Subscription connection closed by server")
            self._finish(ListenerState.completed, SubscriptionCompleted(self.request_id, self.generation))
        except asyncio.CancelledError:
            logger.debug("Subscription for %s cancelled", self.request_id)
            raise
        except Exception as e:  # noqa: BLE001
            logger.error("Background subscription error: %s: %s", type(e).__name__, e)
            if self.terminal:
                return
            self._finish(
                ListenerState.subscription_error,
                SubscriptionFailed(self.request_id, self.generation, f"{type(e).__name__}: {e}"),
            )
        finally:
            self.armed.set()

    async def _handshake(self, ws: Any) -> None:
        await ws.send(json.dumps({"type": "connection_init", "payload": self._connection_params()}))
        while True:
            msg = json.loads(await asyncio.wait_for(ws.recv(), timeout=self.settings.subscribe_timeout))
            kind = msg.get("type")
            if kind == "connection_ack":
                return
            if kind == "ping":
                await ws.send(json.dumps({"type": "pong"}))
                continue
            raise ConnectionError(f"Unexpected message before connection_ack: {kind}")

    async def _handle(self, ws: Any, raw: Any) -> bool:
        """Process one server message; returns True once a terminal state is reached."""
        msg = json.loads(raw)
        kind = msg.get("type")
        if kind == "ping":
            await ws.send(json.dumps({"type": "pong"}))
            return False
        if kind == "next":
            data = (msg.get("payload") or {}).get("data") or {}
            token = (data.get("createdAuthenticationToken") or {}).get("token") or {}
            if not token.get("accessToken"):
                logger.info("Subscription data without token: %s", msg.get("payload"))
                return False
            logger.info("Token received via background subscription")
            self._finish(
                ListenerState.token_received,
                TokenReceived(self.request_id, self.generation, Credential.model_validate(token)),
            )
            await ws.send(json.dumps({"id": SUBSCRIPTION_ID, "type": "complete"}))
            return True
        if kind == "error":
            reason = format_errors(msg.get("payload"))
            logger.error("Background subscription error: %s", reason)
            self._finish(ListenerState.subscription_error, SubscriptionFailed(self.request_id, self.generation, reason))
            return True
        if kind == "complete":
            logger.info("Background subscription completed")
            self._finish(ListenerState.completed, SubscriptionCompleted(self.request_id, self.generation))
            return True
        return False

    def _finish(self, state: ListenerState, event: Optional[AuthEvent]) -> None:
        self.state = state
        if event is not None:
            self.events.put_nowait(event)
