from __future__ import annotations

from typing import Any, Dict, List, Optional


class CaidoMCPError(Exception):
    """Base class for errors raised while talking to Caido."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RemoteCallFailed(CaidoMCPError):
    """A GraphQL or HTTP request to the Caido instance failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class AuthStartFailed(CaidoMCPError):
    pass


class RefreshFailed(CaidoMCPError):
    pass


class PluginNotFound(CaidoMCPError):
    pass


class PackageNotFound(PluginNotFound):
    pass


class BackendNotFound(PluginNotFound):
    pass


class ToolNotRegistered(CaidoMCPError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Tool '{name}' is not registered")
        self.name = name


class ToolArgumentsInvalid(CaidoMCPError):
    def __init__(self, name: str, missing: List[str]) -> None:
        super().__init__(f"Missing required arguments for {name}: {', '.join(missing)}")
        self.name = name
        self.missing = missing
