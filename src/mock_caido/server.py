from __future__ import annotations

import asyncio
import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
import uvicorn


PACKAGE_NAME = "Ebka AI Assistant"
TOOLS_VERSION = "1.0.2"


def _iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class PendingRequest:
    id: str
    user_code: str
    expires_at: datetime
    approved: Optional[asyncio.Event] = None


@dataclass
class MockCaido:
    """In-memory state of the fake Caido instance."""

    base_url: str = "http://127.0.0.1:8080"
    token_ttl: timedelta = timedelta(hours=1)
    flow_ttl: timedelta = timedelta(minutes=15)
    auto_approve: Optional[float] = None
    require_auth: bool = True
    install_backend: bool = True
    backend_id: str = field(default_factory=lambda: secrets.token_hex(8))
    requests: Dict[str, PendingRequest] = field(default_factory=dict)
    access_tokens: Dict[str, datetime] = field(default_factory=dict)
    refresh_tokens: Dict[str, str] = field(default_factory=dict)
    calls: List[Dict[str, Any]] = field(default_factory=list)

    def issue_token(self) -> Dict[str, Any]:
        access = "at_" + secrets.token_urlsafe(16)
        refresh = "rt_" + secrets.token_urlsafe(16)
        expires_at = datetime.now(timezone.utc) + self.token_ttl
        self.access_tokens[access] = expires_at
        self.refresh_tokens[refresh] = access
        return {"accessToken": access, "refreshToken": refresh, "expiresAt": _iso(expires_at)}

    def token_valid(self, token: Optional[str]) -> bool:
        if not token:
            return False
        expires_at = self.access_tokens.get(token)
        return expires_at is not None and expires_at > datetime.now(timezone.utc)

    def start_flow(self) -> PendingRequest:
        req = PendingRequest(
            id=secrets.token_hex(6),
            user_code=secrets.token_hex(3).upper(),
            expires_at=datetime.now(timezone.utc) + self.flow_ttl,
            approved=asyncio.Event(),
        )
        self.requests[req.id] = req
        return req

    def approve(self, request_id: str) -> bool:
        req = self.requests.get(request_id)
        if req is None or req.approved is None:
            return False
        req.approved.set()
        return True

    def refresh(self, refresh_token: str) -> Optional[Dict[str, Any]]:
        old_access = self.refresh_tokens.pop(refresh_token, None)
        if old_access is None:
            return None
        self.access_tokens.pop(old_access, None)
        return self.issue_token()

    def plugin_packages(self) -> List[Dict[str, Any]]:
        plugins: List[Dict[str, Any]] = [
            {"__typename": "PluginFrontend", "id": "ebka-frontend-" + self.backend_id[:4], "name": "ebka-frontend", "enabled": True, "manifestId": "ebka-frontend"},
        ]
        if self.install_backend:
            plugins.append(
                {
                    "__typename": "PluginBackend",
                    "id": self.backend_id,
                    "name": "ebka-backend",
                    "enabled": True,
                    "manifestId": "ebka-backend",
                    "runtime": "javascript",
                    "state": {"error": None, "running": True},
                }
            )
        return [
            {
                "id": "pkg-" + self.backend_id[:6],
                "name": PACKAGE_NAME,
                "version": "0.1.1",
                "installedAt": _iso(datetime.now(timezone.utc)),
                "manifestId": "ebka-ai-assistant",
                "plugins": plugins,
            }
        ]


def _bearer(request_headers: Any) -> Optional[str]:
    value = request_headers.get("authorization") or ""
    if value.lower().startswith("bearer "):
        return value[len("bearer "):].strip()
    return None


def _error(message: str) -> Dict[str, Any]:
    return {"errors": [{"message": message}]}


async def handle_graphql(state: MockCaido, body: Dict[str, Any], token: Optional[str]) -> Dict[str, Any]:
    query = body.get("query") or ""
    variables = body.get("variables") or {}
    if "startAuthenticationFlow" in query:
        req = state.start_flow()
        if state.auto_approve is not None:
            asyncio.get_running_loop().call_later(state.auto_approve, state.approve, req.id)
        return {
            "data": {
                "startAuthenticationFlow": {
                    "request": {
                        "id": req.id,
                        "expiresAt": _iso(req.expires_at),
                        "userCode": req.user_code,
                        "verificationUrl": f"{state.base_url}/verify/{req.id}",
                    }
                }
            }
        }
    if "refreshAuthenticationToken" in query:
        issued = state.refresh(str(variables.get("refreshToken", "")))
        if issued is None:
            return _error("Invalid refresh token")
        return {"data": {"refreshAuthenticationToken": {"token": issued}}}
    if "pluginPackages" in query:
        if state.require_auth and not state.token_valid(token):
            return _error("Unauthorized")
        return {"data": {"pluginPackages": state.plugin_packages()}}
    return _error("Unsupported operation")


def _plugin_function(state: MockCaido, name: str, args: List[Any]) -> Any:
    if name != "claudeDesktop":
        return f"Function {name} not found"
    tool = json.loads(args[0])
    params = json.loads(json.loads(args[1])) if len(args) > 1 else {}
    state.calls.append({"tool": tool, "input": params})
    if tool == "get_tools_version":
        return {"client_info": f"Plugin tools version: {TOOLS_VERSION}"}
    return {"tool": tool, "input": params, "ok": True}


def create_app(state: Optional[MockCaido] = None) -> FastAPI:
    state = state or MockCaido()
    app = FastAPI(title="mock-caido")
    app.state.caido = state

    @app.post("/graphql")
    async def graphql_endpoint(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except Exception:  # noqa: BLE001
            return JSONResponse(_error("Parse error"), status_code=400)
        result = await handle_graphql(state, body if isinstance(body, dict) else {}, _bearer(request.headers))
        return JSONResponse(result)

    @app.get("/verify/{request_id}")
    async def verify(request_id: str) -> JSONResponse:
        if not state.approve(request_id):
            return JSONResponse({"approved": False}, status_code=404)
        return JSONResponse({"approved": True, "requestId": request_id})

    @app.post("/plugin/backend/{plugin_id}/function")
    async def plugin_function(plugin_id: str, request: Request) -> JSONResponse:
        if state.require_auth and not state.token_valid(_bearer(request.headers)):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        if plugin_id != state.backend_id or not state.install_backend:
            return JSONResponse({"error": f"Plugin {plugin_id} not found"}, status_code=404)
        body = await request.json()
        return JSONResponse(_plugin_function(state, body.get("name", ""), body.get("args") or []))

    @app.websocket("/ws/graphql")
    async def ws_graphql(websocket: WebSocket) -> None:
        await websocket.accept(subprotocol="graphql-transport-ws")
        try:
            init = json.loads(await websocket.receive_text())
            if init.get("type") != "connection_init":
                await websocket.close(code=4400)
                return
            await websocket.send_text(json.dumps({"type": "connection_ack"}))
            msg = json.loads(await websocket.receive_text())
            if msg.get("type") != "subscribe":
                await websocket.close(code=4400)
                return
            sub_id = msg.get("id")
            request_id = ((msg.get("payload") or {}).get("variables") or {}).get("requestId")
            req = state.requests.get(str(request_id))
            if req is None or req.approved is None:
                await websocket.send_text(
                    json.dumps({"id": sub_id, "type": "error", "payload": [{"message": "Unknown request"}]})
                )
                return
            await req.approved.wait()
            token = state.issue_token()
            await websocket.send_text(
                json.dumps(
                    {
                        "id": sub_id,
                        "type": "next",
                        "payload": {"data": {"createdAuthenticationToken": {"token": token}}},
                    }
                )
            )
            await websocket.send_text(json.dumps({"id": sub_id, "type": "complete"}))
        except WebSocketDisconnect:
            return

    return app


app = create_app()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Mock Caido instance for local MCP development")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--token-ttl", type=int, default=3600, help="Access token lifetime in seconds")
    parser.add_argument("--auto-approve", type=float, default=None, help="Approve device flows after N seconds")
    parser.add_argument("--no-auth", action="store_true", help="Do not require a bearer token")
    args = parser.parse_args()

    state = MockCaido(
        base_url=f"http://{args.host}:{args.port}",
        token_ttl=timedelta(seconds=args.token_ttl),
        auto_approve=args.auto_approve,
        require_auth=not args.no_auth,
    )
    uvicorn.run(create_app(state), host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
