from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_BASE_URL = "http://localhost:8080"


def _default_token_dir() -> Path:
    return Path.home() / ".ebka-caido"


@dataclass
class Settings:
    """Connection and plugin settings for a single Caido instance."""

    base_url: str = DEFAULT_BASE_URL
    auth_token: Optional[str] = None
    token_dir: Path = field(default_factory=_default_token_dir)
    log_file: Optional[Path] = None
    plugin_package_name: str = "Ebka AI Assistant"
    plugin_package_hint: str = "Ebka"
    plugin_manifest_id: str = "ebka-ai-assistant"
    backend_function: str = "claudeDesktop"
    refresh_margin: timedelta = timedelta(minutes=5)
    request_timeout: float = 30.0
    subscribe_timeout: float = 10.0

    def __post_init__(self) -> None:
        self.base_url = normalize_base_url(self.base_url)
        self.token_dir = Path(self.token_dir).expanduser()

    @property
    def graphql_url(self) -> str:
        return f"{self.base_url}/graphql"

    @property
    def ws_url(self) -> str:
        # http -> ws, https -> wss
        if self.base_url.startswith("http"):
            return "ws" + self.base_url[len("http"):] + "/ws/graphql"
        return self.base_url + "/ws/graphql"

    @property
    def token_path(self) -> Path:
        return self.token_dir / "token.json"

    def function_url(self, plugin_id: str) -> str:
        return f"{self.base_url}/plugin/backend/{plugin_id}/function"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        kwargs = {
            "base_url": env.get("CAIDO_BASE_URL") or DEFAULT_BASE_URL,
            "auth_token": env.get("CAIDO_AUTH_TOKEN") or env.get("CAIDO_PAT") or None,
        }
        if env.get("CAIDO_MCP_TOKEN_DIR"):
            kwargs["token_dir"] = Path(env["CAIDO_MCP_TOKEN_DIR"])
        if env.get("CAIDO_MCP_LOG_FILE"):
            kwargs["log_file"] = Path(env["CAIDO_MCP_LOG_FILE"]).expanduser()
        if env.get("CAIDO_MCP_TIMEOUT"):
            kwargs["request_timeout"] = float(env["CAIDO_MCP_TIMEOUT"])
        return cls(**kwargs)


def normalize_base_url(url: str) -> str:
    """Strip trailing slashes and a trailing ``/graphql`` from an endpoint."""
    url = (url or DEFAULT_BASE_URL).strip().rstrip("/")
    if url.endswith("/graphql"):
        url = url[: -len("/graphql")]
    return url
