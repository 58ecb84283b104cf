from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from .auth import refresh_access_token, start_authentication_flow
from .config import Settings, normalize_base_url
from .errors import RefreshFailed
from .graphql import GraphQLClient
from .models import AuthRequest, AuthState, AuthStatus, Credential, PendingAuthRequest
from .subscription import AuthEvent, TokenReceived, TokenSubscription
from .token_store import TokenStore, is_expired

logger = logging.getLogger(__name__)


class AuthSession:
    """Single owner of the authentication state of the server process.

    Holds the current access token with its expiry and refresh token, the
    pending device-flow request and the credential received for it. Subscription listeners never touch
    this state directly: they publish events on ``events`` and the session
    applies them in order, either from its consumer task or whenever the
    state is read.

    Every flow gets a new ``generation``; events are only accepted when both
    the request id and the generation match the pending request, so a token
    arriving late for a superseded flow is dropped.
    """

    def __init__(
        self,
        settings: Settings,
        graphql: GraphQLClient,
        store: TokenStore,
        subscription_factory: Callable[..., TokenSubscription] = TokenSubscription,
    ) -> None:
        self.settings = settings
        self.graphql = graphql
        self.store = store
        self.access_token: Optional[str] = settings.auth_token
        self.token_expires_at: Optional[datetime] = None
        self.refresh_token: Optional[str] = None
        self.pending: Optional[PendingAuthRequest] = None
        self.received_token: Optional[Credential] = None
        self.generation = 0
        self.events: "asyncio.Queue[AuthEvent]" = asyncio.Queue()
        self._subscription_factory = subscription_factory
        self._listener: Optional[TokenSubscription] = None
        self._listener_task: Optional[asyncio.Task] = None
        self._consumer_task: Optional[asyncio.Task] = None

    @property
    def has_token(self) -> bool:
        return bool(self.access_token)

    async def restore(self) -> None:
        """Load the saved credential for this endpoint, refreshing it if stale."""
        if self.access_token:
            logger.info("Using access token from configuration")
            return
        saved = self.store.load()
        if saved is None:
            return
        if is_expired(saved.expires_at, self.settings.refresh_margin) and saved.refresh_token:
            logger.info("Saved token is expired, attempting refresh")
            try:
                credential = await refresh_access_token(self.graphql, saved.refresh_token)
            except RefreshFailed as e:
                logger.error("Token refresh on startup failed: %s", e)
                return
            self._accept(credential)
            logger.info("Token refreshed on startup")
            return
        self._hold(saved)
        self.received_token = saved
        logger.info("Using saved token from disk")

    async def start_flow(self) -> AuthRequest:
        request = await start_authentication_flow(self.graphql)
        self._cancel_listener()
        self.generation += 1
        self.pending = PendingAuthRequest(
            request_id=request.id,
            verification_url=request.verification_url,
            expires_at=request.expires_at,
            generation=self.generation,
        )
        self.received_token = None

        listener = self._subscription_factory(
            self.settings,
            request.id,
            self.generation,
            self.events,
            auth_token=self.access_token,
        )
        self._listener = listener
        self._listener_task = asyncio.create_task(listener.run())
        self._ensure_consumer()
        try:
            await asyncio.wait_for(listener.armed.wait(), timeout=self.settings.subscribe_timeout)
        except asyncio.TimeoutError:
            logger.warning("Subscription for %s not acknowledged within %.1fs", request.id, self.settings.subscribe_timeout)
        return request

    def check_state(self) -> AuthState:
        self.drain_events()
        if self.received_token is not None:
            return AuthState(status=AuthStatus.ready, token=self.received_token)
        pending = self.pending
        if pending is None:
            return AuthState(status=AuthStatus.none)
        if pending.is_expired():
            logger.info("Authentication request %s expired", pending.request_id)
            self._cancel_listener()
            self.pending = None
            return AuthState(status=AuthStatus.expired, verification_url=pending.verification_url)
        return AuthState(status=AuthStatus.waiting, verification_url=pending.verification_url)

    async def ensure_valid_token(self) -> bool:
        self.drain_events()
        if self.access_token and not is_expired(self.token_expires_at, self.settings.refresh_margin):
            return True

        refresh_token = self.refresh_token
        if not refresh_token:
            saved = self.store.load()
            refresh_token = saved.refresh_token if saved else None
        if not refresh_token:
            if self.access_token:
                logger.warning("Access token expired and no refresh token is available")
                self._clear_token()
            return False
        try:
            credential = await refresh_access_token(self.graphql, refresh_token)
        except RefreshFailed as e:
            logger.error("Token refresh failed: %s", e)
            self._clear_token()
            return False
        self._accept(credential)
        logger.info("Token refreshed and saved")
        return True

    async def reconfigure(self, base_url: Optional[str] = None, pat: Optional[str] = None) -> None:
        """Point the session at another endpoint and/or use a personal access token."""
        if base_url:
            endpoint = normalize_base_url(base_url)
            if endpoint != self.settings.base_url:
                logger.info("Switching Caido endpoint %s -> %s", self.settings.base_url, endpoint)
                self.settings.base_url = endpoint
                self._cancel_listener()
                self.pending = None
                self._clear_token()
        if pat:
            self.settings.auth_token = pat
            self._clear_token()
            self.access_token = pat
        elif not self.access_token:
            await self.restore()

    def apply_event(self, event: AuthEvent) -> bool:
        pending = self.pending
        if pending is None or event.request_id != pending.request_id or event.generation != self.generation:
            logger.warning("Ignoring %s for superseded request %s", type(event).__name__, event.request_id)
            return False
        if isinstance(event, TokenReceived):
            self._accept(event.credential)
            self.pending = None
            logger.info("Authentication request %s completed", event.request_id)
        else:
            # Pending request stays so the caller can poll or restart the flow.
            logger.info("Subscription for %s ended without a token: %s", event.request_id, event)
        return True

    def drain_events(self) -> None:
        while True:
            try:
                event = self.events.get_nowait()
            except asyncio.QueueEmpty:
                return
            self.apply_event(event)

    async def close(self) -> None:
        tasks = [t for t in (self._listener_task, self._consumer_task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._listener_task = None
        self._consumer_task = None

    def _hold(self, credential: Credential) -> None:
        self.access_token = credential.access_token
        self.token_expires_at = credential.expires_at
        self.refresh_token = credential.refresh_token

    def _accept(self, credential: Credential) -> None:
        self._hold(credential)
        saved = self.store.save(credential)
        self.received_token = saved or credential

    def _clear_token(self) -> None:
        self.access_token = None
        self.token_expires_at = None
        self.refresh_token = None
        self.received_token = None

    def _cancel_listener(self) -> None:
        if self._listener_task is not None and not self._listener_task.done():
            self._listener_task.cancel()
        self._listener_task = None
        self._listener = None

    def _ensure_consumer(self) -> None:
        if self._consumer_task is None or self._consumer_task.done():
            self._consumer_task = asyncio.create_task(self._consume())

    async def _consume(self) -> None:
        while True:
            event = await self.events.get()
            self.apply_event(event)
