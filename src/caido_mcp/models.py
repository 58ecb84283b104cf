from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AuthStatus(str, Enum):
    ready = "ready"
    waiting = "waiting"
    expired = "expired"
    none = "none"


class PluginKind(str, Enum):
    backend = "backend"
    frontend = "frontend"
    workflow = "workflow"
    unknown = "unknown"


_KIND_BY_TYPENAME = {
    "PluginBackend": PluginKind.backend,
    "PluginFrontend": PluginKind.frontend,
    "PluginWorkflow": PluginKind.workflow,
}


class Credential(BaseModel):
    """Access/refresh token pair issued by a Caido instance.

    Serialized with the camelCase keys Caido uses, and ``baseUrl`` for the
    endpoint the token was issued for.
    """

    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken")
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    source_endpoint: Optional[str] = Field(default=None, alias="baseUrl")
    saved_at: Optional[datetime] = Field(default=None, alias="savedAt")

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class AuthRequest(BaseModel):
    """Payload returned when a device authentication flow starts."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    verification_url: str = Field(alias="verificationUrl")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    user_code: Optional[str] = Field(default=None, alias="userCode")


class PendingAuthRequest(BaseModel):
    request_id: str
    verification_url: str
    expires_at: Optional[datetime] = None
    generation: int

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= as_utc(self.expires_at)


class AuthState(BaseModel):
    status: AuthStatus
    verification_url: Optional[str] = None
    token: Optional[Credential] = None

    @property
    def ready(self) -> bool:
        return self.status == AuthStatus.ready


class Plugin(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    typename: str = Field(default="", alias="__typename")
    id: str
    name: Optional[str] = None
    enabled: Optional[bool] = None
    manifest_id: Optional[str] = Field(default=None, alias="manifestId")

    @property
    def kind(self) -> PluginKind:
        return _KIND_BY_TYPENAME.get(self.typename, PluginKind.unknown)


class PluginPackage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    name: Optional[str] = None
    version: Optional[str] = None
    manifest_id: Optional[str] = Field(default=None, alias="manifestId")
    plugins: List[Plugin] = Field(default_factory=list)

    @property
    def backend(self) -> Optional[Plugin]:
        return next((p for p in self.plugins if p.kind == PluginKind.backend), None)


class ToolResult(BaseModel):
    text: str
    is_error: bool = False

    @classmethod
    def error(cls, text: str) -> "ToolResult":
        return cls(text=text, is_error=True)
