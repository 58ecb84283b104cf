from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ToolArgumentsInvalid, ToolNotRegistered

AUTHENTICATE = "authenticate"
CHECK_AUTHENTICATION = "check_authentication"
AUTH_TOOLS = (AUTHENTICATE, CHECK_AUTHENTICATION)


@dataclass
class ToolSpec:
    name: str
    description: str
    properties: Dict[str, Any] = field(default_factory=dict)
    required: List[str] = field(default_factory=list)

    @property
    def input_schema(self) -> Dict[str, Any]:
        return {"type": "object", "properties": self.properties, "required": self.required}


AUTH_TOOL_SPECS = [
    ToolSpec(
        name=AUTHENTICATE,
        description=(
            "Start OAuth authentication flow with Caido. This will provide a verification URL "
            "for the user to authorize the connection."
        ),
    ),
    ToolSpec(
        name=CHECK_AUTHENTICATION,
        description=(
            "Check the status of pending authentication request. Use this after the user has "
            "completed the verification."
        ),
    ),
]


@dataclass
class ToolCatalog:
    version: str
    tools: Dict[str, ToolSpec]

    def __contains__(self, name: object) -> bool:
        return name in self.tools

    def get(self, name: str) -> ToolSpec:
        try:
            return self.tools[name]
        except KeyError:
            raise ToolNotRegistered(name) from None

    def listing(self) -> List[ToolSpec]:
        """Auth tools first, then the catalog in declaration order."""
        return [*AUTH_TOOL_SPECS, *self.tools.values()]

    def validate_arguments(self, name: str, arguments: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        spec = self.get(name)
        arguments = dict(arguments or {})
        missing = [r for r in spec.required if arguments.get(r) is None]
        if missing:
            raise ToolArgumentsInvalid(name, missing)
        return arguments


def _default_catalog_path() -> Path:
    return Path(__file__).resolve().parent / "tools.json"


def load_catalog(path: Optional[Path] = None) -> ToolCatalog:
    raw = json.loads((path or _default_catalog_path()).read_text(encoding="utf-8"))
    tools: Dict[str, ToolSpec] = {}
    for t in raw.get("tools", []):
        if t["name"] in AUTH_TOOLS:
            continue
        schema = t.get("input_schema") or {}
        tools[t["name"]] = ToolSpec(
            name=t["name"],
            description=t.get("description", ""),
            properties=schema.get("properties") or {},
            required=schema.get("required") or [],
        )
    return ToolCatalog(version=str(raw.get("version", "0")), tools=tools)
