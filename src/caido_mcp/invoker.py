from __future__ import annotations

import json
import logging
from typing import Any, List

import httpx

from .errors import RemoteCallFailed
from .graphql import GraphQLClient, bearer_headers
from .plugins import resolve_backend_plugin_id
from .session import AuthSession

logger = logging.getLogger(__name__)


class FunctionInvoker:
    """Calls functions exposed by the backend plugin running inside Caido.

    The backend plugin id is resolved on every call: it changes whenever
    Caido restarts or the plugin is reinstalled.
    """

    def __init__(self, session: AuthSession, graphql: GraphQLClient) -> None:
        self.session = session
        self.graphql = graphql

    @property
    def settings(self):
        return self.session.settings

    async def call(self, function_name: str, args: List[Any]) -> Any:
        logger.info("Calling Caido function %s", function_name)
        token = self.session.access_token
        plugin_id = await resolve_backend_plugin_id(self.graphql, self.settings, token)
        url = self.settings.function_url(plugin_id)
        try:
            response = await self.graphql.http.post(
                url,
                json={"name": function_name, "args": args},
                headers=bearer_headers(token),
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            raise RemoteCallFailed(f"Request failed with status code {code}", status_code=code) from e
        except httpx.RequestError as e:
            raise RemoteCallFailed(f"Cannot connect to Caido at {url}: {type(e).__name__}: {e}") from e
        logger.info("Function %s executed successfully", function_name)
        try:
            return response.json()
        except json.JSONDecodeError:
            return response.text
