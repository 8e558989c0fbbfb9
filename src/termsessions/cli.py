"""CLI entry point for termsessions."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp
import typer

from termsessions.client import SessionClient
from termsessions.config import ClientConfig, ServerConfig
from termsessions.errors import TermSessionsError

app = typer.Typer(
    name="termsessions",
    help="Persistent PTY shell sessions behind a websocket RPC API.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _http_url(ws_url: str) -> str:
    """Map a ws(s):// server URL onto its http(s):// base."""
    if ws_url.startswith("wss://"):
        return "https://" + ws_url[len("wss://"):]
    if ws_url.startswith("ws://"):
        return "http://" + ws_url[len("ws://"):]
    return ws_url


@app.command()
def serve(
    host: str | None = typer.Option(
        None, "--host", "-H", help="Interface to bind (default: from env/config)."
    ),
    port: int | None = typer.Option(
        None, "--port", "-p", help="Port to listen on (default: from env/config)."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Run the session server until interrupted."""
    from termsessions.server import SessionServer

    setup_logging(verbose)

    config = ServerConfig.load(config_file)
    if host:
        config.host = host
    if port is not None:
        config.port = port

    typer.echo("termsessions v0.1.0")
    typer.echo(f"Listening on ws://{config.host}:{config.port}")
    typer.echo(f"Health check: http://{config.host}:{config.port}/health")

    server = SessionServer(config)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        pass


@app.command()
def call(
    method: str = typer.Argument(help="RPC method, e.g. session.list or session.exec."),
    params: str = typer.Option(
        "{}", "--params", "-P", help="Method parameters as a JSON object."
    ),
    url: str | None = typer.Option(
        None, "--url", "-u", help="Server URL (default: SESSION_API_URL or config)."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Send one RPC request and print the JSON result."""
    if verbose:
        setup_logging(verbose)
    try:
        parsed = json.loads(params)
    except ValueError as e:
        typer.echo(f"Error: --params is not valid JSON: {e}", err=True)
        raise typer.Exit(2)
    if not isinstance(parsed, dict):
        typer.echo("Error: --params must be a JSON object", err=True)
        raise typer.Exit(2)

    config = ClientConfig.load(config_file)
    try:
        result = asyncio.run(_call(method, parsed, url, config))
    except TermSessionsError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(json.dumps(result, indent=2))


async def _call(
    method: str, params: dict[str, Any], url: str | None, config: ClientConfig
) -> Any:
    async with SessionClient(url, config=config) as client:
        return await client.request(method, params)


@app.command()
def health(
    url: str | None = typer.Option(
        None, "--url", "-u", help="Server URL (default: SESSION_API_URL or config)."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Query the server's health endpoint."""
    config = ClientConfig.load(config_file)
    target = _http_url(url or config.url).rstrip("/") + "/health"
    try:
        body = asyncio.run(_fetch_health(target, config.connect_timeout))
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        typer.echo(f"Error: {target} unreachable: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Status: {body.get('status')}")
    typer.echo(f"Sessions: {body.get('sessions')}")


async def _fetch_health(target: str, timeout: float) -> dict[str, Any]:
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        async with session.get(target) as resp:
            resp.raise_for_status()
            return await resp.json()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
