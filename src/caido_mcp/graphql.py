from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .config import Settings
from .errors import RemoteCallFailed

logger = logging.getLogger(__name__)


START_AUTHENTICATION_FLOW = """mutation StartAuthenticationFlow {
  startAuthenticationFlow {
    request {
      id
      expiresAt
      userCode
      verificationUrl
    }
  }
}"""

REFRESH_AUTHENTICATION_TOKEN = """mutation RefreshAuthenticationToken($refreshToken: Token!) {
  refreshAuthenticationToken(refreshToken: $refreshToken) {
    token {
      accessToken
      refreshToken
      expiresAt
    }
  }
}"""

CREATED_AUTHENTICATION_TOKEN = """subscription CreatedAuthToken($requestId: ID!) {
  createdAuthenticationToken(requestId: $requestId) {
    token {
      expiresAt
      accessToken
      refreshToken
    }
  }
}"""

PLUGIN_PACKAGES = """query pluginPackages {
  pluginPackages {
    id
    name
    version
    installedAt
    manifestId
    plugins {
      __typename
      ... on PluginFrontend {
        id
        name
        enabled
        manifestId
      }
      ... on PluginBackend {
        id
        name
        enabled
        manifestId
        runtime
        state {
          error
          running
        }
      }
      ... on PluginWorkflow {
        id
        name
        enabled
        manifestId
      }
    }
  }
}"""


def bearer_headers(token: Optional[str]) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def format_errors(errors: Any) -> str:
    if isinstance(errors, list):
        return "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
    return str(errors)


class GraphQLClient:
    """Executes GraphQL documents against the Caido HTTP endpoint."""

    def __init__(self, settings: Settings, http: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._http = http
        self._owns_http = http is None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.settings.request_timeout)
        return self._http

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def execute(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        operation_name: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"query": query, "variables": variables or {}}
        if operation_name:
            payload["operationName"] = operation_name
        url = self.settings.graphql_url
        logger.debug("POST %s operation=%s", url, operation_name or "-")
        try:
            response = await self.http.post(url, json=payload, headers=bearer_headers(token))
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            raise RemoteCallFailed(f"Request failed with status code {code}", status_code=code) from e
        except httpx.RequestError as e:
            raise RemoteCallFailed(f"Cannot connect to Caido at {url}: {type(e).__name__}: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise RemoteCallFailed(f"Non-JSON response from {url}") from e
        if not isinstance(body, dict):
            raise RemoteCallFailed(f"Unexpected GraphQL response from {url}: expected a JSON object")

        if body.get("errors"):
            logger.error("GraphQL errors: %s", body["errors"])
            raise RemoteCallFailed(f"GraphQL errors: {format_errors(body['errors'])}", errors=body["errors"])
        data = body.get("data")
        if not data:
            raise RemoteCallFailed("No data in GraphQL response")
        return data
