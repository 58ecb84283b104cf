from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from .errors import CaidoMCPError
from .invoker import FunctionInvoker
from .models import AuthStatus, ToolResult
from .plugins import fetch_plugin_packages_raw, resolve_backend_plugin_id
from .session import AuthSession
from .tools import AUTH_TOOLS, AUTHENTICATE, CHECK_AUTHENTICATION, ToolCatalog

logger = logging.getLogger(__name__)

AUTH_ERROR_SIGNATURES = ("401", "unauthorized", "authentication", "no plugin packages found")

AUTH_REQUIRED_TEXT = """❌ Authentication required to use Caido tools.

Error: {error}

Please use the `authenticate` tool to start the OAuth authentication flow."""

AUTH_STARTED_TEXT = """🔐 **Authentication Required**

Please complete the authentication by visiting this URL:
{url}
{user_code}
After you've completed the verification, use the `check_authentication` tool to complete the setup.

Request ID: {request_id}
Expires at: {expires_at}"""


def is_auth_error(message: str) -> bool:
    lowered = message.lower()
    return any(sig in lowered for sig in AUTH_ERROR_SIGNATURES)


class ToolDispatcher:
    """Routes MCP tool calls to the auth flow or to the Caido backend plugin.

    Calls that touch the auth state run one at a time; ``check_authentication``
    never waits on them. Every failure becomes an error ``ToolResult``.
    """

    def __init__(self, session: AuthSession, invoker: FunctionInvoker, catalog: ToolCatalog) -> None:
        self.session = session
        self.invoker = invoker
        self.catalog = catalog
        self._lock = asyncio.Lock()

    async def dispatch(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        logger.info("Tool call requested: %s", name)
        try:
            if name == CHECK_AUTHENTICATION:
                return self._check_authentication()
            if name == AUTHENTICATE:
                async with self._lock:
                    return await self._authenticate()
            arguments = self.catalog.validate_arguments(name, arguments)
            async with self._lock:
                await self.session.ensure_valid_token()
                result = await self._forward(name, arguments)
        except Exception as e:  # noqa: BLE001
            return self._failure(name, e)
        logger.info("Tool %s executed successfully", name)
        return ToolResult(text=json.dumps(result, indent=2))

    async def _authenticate(self) -> ToolResult:
        request = await self.session.start_flow()
        return ToolResult(
            text=AUTH_STARTED_TEXT.format(
                url=request.verification_url,
                user_code=f"\nUser code: {request.user_code}\n" if request.user_code else "",
                request_id=request.id,
                expires_at=request.expires_at.isoformat() if request.expires_at else "unknown",
            )
        )

    def _check_authentication(self) -> ToolResult:
        state = self.session.check_state()
        if state.status == AuthStatus.none:
            return ToolResult(text="❌ No pending authentication request. Please use the `authenticate` tool first.")
        if state.status == AuthStatus.ready:
            return ToolResult(text="✅ Authentication successful! You can now use Caido tools.")
        if state.status == AuthStatus.expired:
            return ToolResult(
                text="⌛ The authentication request expired before it was approved. "
                "Please use the `authenticate` tool to start a new one."
            )
        return ToolResult(
            text=(
                "⏳ Authentication pending (state: WAITING). Please complete the verification at:\n"
                f"{state.verification_url or 'N/A'}\n\nThen run this tool again."
            )
        )

    async def _forward(self, name: str, arguments: Dict[str, Any]) -> Any:
        token = self.session.access_token
        if name == "get_plugin_info":
            return await fetch_plugin_packages_raw(self.invoker.graphql, token)
        if name == "sendAuthToken":
            await self.session.reconfigure(base_url=arguments.get("api_endpoint"), pat=arguments.get("pat"))
            plugin_id = await resolve_backend_plugin_id(
                self.invoker.graphql, self.session.settings, self.session.access_token
            )
            logger.info("Connection configured successfully. Plugin ID: %s", plugin_id)
            return {
                "success": True,
                "message": "PAT and API endpoint configured successfully",
                "pluginId": plugin_id,
                "pluginName": self.session.settings.plugin_package_name,
            }

        # The backend plugin decodes each argument as JSON; the tool input is
        # itself passed as a JSON string.
        result = await self.invoker.call(
            self.session.settings.backend_function,
            [json.dumps(name), json.dumps(json.dumps(arguments))],
        )
        if name == "get_tools_version" and isinstance(result, dict):
            result["client_info"] = f"{result.get('client_info', '')}\nMCP tools version: {self.catalog.version}"
        return result

    def _failure(self, name: str, error: Exception) -> ToolResult:
        message = error.message if isinstance(error, CaidoMCPError) else str(error)
        if isinstance(error, CaidoMCPError):
            logger.error("Error executing tool %s: %s", name, message)
        else:
            logger.exception("Unexpected error executing tool %s", name)
        if is_auth_error(message) and not self.session.has_token and name not in AUTH_TOOLS:
            return ToolResult.error(AUTH_REQUIRED_TEXT.format(error=message))
        return ToolResult.error(f"Error calling Caido function {name}: {message}")
