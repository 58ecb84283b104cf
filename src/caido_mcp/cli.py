from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.table import Table

from .config import Settings, normalize_base_url
from .errors import CaidoMCPError
from .models import AuthStatus
from .plugins import fetch_plugin_packages, find_backend_plugin
from .server import build_dispatcher, run_mcp_server
from .token_store import TokenStore, is_expired
from .tools import AUTH_TOOLS, load_catalog

# stdout carries the MCP protocol when serving; everything human-facing goes to stderr there.
console = Console()
err_console = Console(stderr=True)

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def configure_logging(verbose: bool, log_file: Optional[Path] = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            err_console.print(f"Failed to open log file {log_file}: {e}")
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT, handlers=handlers, force=True)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


@click.group()
@click.option("--base-url", help="Caido instance URL, e.g. http://localhost:8080")
@click.option("--auth-token", help="Caido personal access token (defaults to CAIDO_AUTH_TOKEN / CAIDO_PAT)")
@click.option("--token-dir", type=click.Path(file_okay=False), help="Directory holding the saved token")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Append logs to this file")
@click.option("--timeout", type=float, help="HTTP request timeout in seconds")
@click.option("--verbose", is_flag=True, default=False, help="Debug logging")
@click.pass_context
def main(
    ctx: click.Context,
    base_url: Optional[str],
    auth_token: Optional[str],
    token_dir: Optional[str],
    log_file: Optional[str],
    timeout: Optional[float],
    verbose: bool,
) -> None:
    """Caido MCP bridge CLI."""
    settings = Settings.from_env()
    if base_url:
        settings.base_url = normalize_base_url(base_url)
    if auth_token:
        settings.auth_token = auth_token
    if token_dir:
        settings.token_dir = Path(token_dir).expanduser()
    if log_file:
        settings.log_file = Path(log_file).expanduser()
    if timeout:
        settings.request_timeout = timeout
    configure_logging(verbose, settings.log_file)
    ctx.obj = {"settings": settings}


@main.command("serve")
@click.pass_context
def serve_cmd(ctx: click.Context) -> None:
    """Run the MCP server on stdio."""
    settings = _settings(ctx)
    err_console.print(f"Caido MCP Server starting for {settings.base_url}")
    run_mcp_server(settings)


@main.command("status")
@click.option("--format", "fmt", type=click.Choice(["text", "json"]), default="text")
@click.pass_context
def status_cmd(ctx: click.Context, fmt: str) -> None:
    """Show the configured endpoint and saved credential."""
    settings = _settings(ctx)
    saved = TokenStore(settings).load()
    status: Dict[str, Any] = {
        "base_url": settings.base_url,
        "pat_configured": bool(settings.auth_token),
        "token_file": str(settings.token_path),
        "saved_token": saved is not None,
        "expires_at": saved.expires_at.isoformat() if saved and saved.expires_at else None,
        "expired": is_expired(saved.expires_at, settings.refresh_margin) if saved else None,
        "refreshable": bool(saved and saved.refresh_token),
    }
    if fmt == "json":
        console.print_json(json.dumps(status))
        return
    table = Table(title="Caido MCP status")
    table.add_column("Key")
    table.add_column("Value")
    for k, v in status.items():
        table.add_row(k, "-" if v is None else str(v))
    console.print(table)


@main.command("logout")
@click.pass_context
def logout_cmd(ctx: click.Context) -> None:
    """Delete the saved credential."""
    settings = _settings(ctx)
    if TokenStore(settings).clear():
        console.print(f"[green]Removed saved token {settings.token_path}[/green]")
    else:
        console.print("No saved token to remove")


@main.command("plugins")
@click.option("--format", "fmt", type=click.Choice(["text", "json"]), default="text")
@click.pass_context
def plugins_cmd(ctx: click.Context, fmt: str) -> None:
    """List installed plugin packages and the resolved backend plugin."""
    settings = _settings(ctx)

    async def _run() -> Any:
        dispatcher = build_dispatcher(settings)
        session = dispatcher.session
        try:
            await session.restore()
            await session.ensure_valid_token()
            return await fetch_plugin_packages(dispatcher.invoker.graphql, session.access_token)
        finally:
            await session.close()
            await dispatcher.invoker.graphql.close()

    try:
        packages = asyncio.run(_run())
    except CaidoMCPError as e:
        raise click.ClickException(e.message)

    if fmt == "json":
        console.print_json(json.dumps([p.model_dump(mode="json", by_alias=True) for p in packages]))
        return
    table = Table(title=f"Plugin packages on {settings.base_url}")
    table.add_column("Package")
    table.add_column("Version")
    table.add_column("Plugin")
    table.add_column("Kind")
    table.add_column("ID")
    for pkg in packages:
        for plugin in pkg.plugins or []:
            table.add_row(pkg.name or "", pkg.version or "", plugin.name or "", plugin.kind.value, plugin.id)
    console.print(table)
    try:
        backend = find_backend_plugin(
            packages, settings.plugin_package_name, settings.plugin_package_hint, settings.plugin_manifest_id
        )
        console.print(f"Backend plugin: [green]{backend.id}[/green]")
    except CaidoMCPError as e:
        console.print(f"[red]{e.message}[/red]")


@main.command("tools")
@click.option("--format", "fmt", type=click.Choice(["text", "json"]), default="text")
@click.option("--catalog", type=click.Path(exists=True, dir_okay=False), help="Alternative tool catalog JSON")
def tools_cmd(fmt: str, catalog: Optional[str]) -> None:
    """List the tools exposed to MCP clients."""
    cat = load_catalog(Path(catalog) if catalog else None)
    specs = cat.listing()
    if fmt == "json":
        console.print_json(
            json.dumps({"version": cat.version, "tools": [{"name": s.name, "inputSchema": s.input_schema} for s in specs]})
        )
        return
    table = Table(title=f"Tools (catalog {cat.version})")
    table.add_column("Name")
    table.add_column("Required")
    table.add_column("Description")
    for s in specs:
        table.add_row(s.name, ",".join(s.required), s.description)
    console.print(table)


@main.command("call")
@click.argument("name")
@click.option("--args", "args_json", default="{}", help='JSON object of tool arguments, e.g. \'{"name":"x"}\'')
@click.pass_context
def call_cmd(ctx: click.Context, name: str, args_json: str) -> None:
    """Dispatch one tool call the way an MCP client would."""
    if name in AUTH_TOOLS:
        raise click.ClickException(f"{name} needs a long-running session; use `caido-mcp login` instead")
    try:
        arguments = json.loads(args_json) if args_json else {}
        if not isinstance(arguments, dict):
            raise ValueError("--args must be a JSON object")
    except ValueError as e:
        raise click.ClickException(f"Invalid --args JSON: {e}")
    settings = _settings(ctx)

    async def _run():
        dispatcher = build_dispatcher(settings)
        try:
            await dispatcher.session.restore()
            return await dispatcher.dispatch(name, arguments)
        finally:
            await dispatcher.session.close()
            await dispatcher.invoker.graphql.close()

    result = asyncio.run(_run())
    console.print(result.text, markup=False, highlight=False, soft_wrap=True)
    sys.exit(1 if result.is_error else 0)


@main.command("login")
@click.option("--poll-interval", type=float, default=2.0, show_default=True, help="Seconds between status checks")
@click.option("--wait", "max_wait", type=float, default=900.0, show_default=True, help="Give up after this many seconds")
@click.pass_context
def login_cmd(ctx: click.Context, poll_interval: float, max_wait: float) -> None:
    """Run the device authentication flow and save the resulting token."""
    settings = _settings(ctx)

    async def _run() -> AuthStatus:
        dispatcher = build_dispatcher(settings)
        session = dispatcher.session
        try:
            request = await session.start_flow()
            console.print(f"Open [bold]{request.verification_url}[/bold] to approve this device")
            if request.user_code:
                console.print(f"User code: [bold]{request.user_code}[/bold]")
            loop = asyncio.get_running_loop()
            deadline = loop.time() + max_wait
            while True:
                state = session.check_state()
                if state.status != AuthStatus.waiting:
                    return state.status
                if loop.time() >= deadline:
                    return AuthStatus.waiting
                await asyncio.sleep(poll_interval)
        finally:
            await session.close()
            await dispatcher.invoker.graphql.close()

    try:
        status = asyncio.run(_run())
    except CaidoMCPError as e:
        raise click.ClickException(e.message)

    if status == AuthStatus.ready:
        console.print(f"[green]Authenticated. Token saved to {settings.token_path}[/green]")
        return
    if status == AuthStatus.expired:
        console.print("[red]The authentication request expired before it was approved.[/red]")
    else:
        console.print("[red]Timed out waiting for approval.[/red]")
    sys.exit(1)
