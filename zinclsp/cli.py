#!/usr/bin/env python3
"""Command-line interface for the Zinc language client."""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import click

from zinclsp.config import SERVER_PATH_ENV, ClientSettings
from zinclsp.errors import ZincLspError
from zinclsp.service import LifecycleController, SessionState

Action = Callable[[LifecycleController], Awaitable[Any]]


def _run(ctx: click.Context, action: Action) -> None:
    """Start a session, run `action` against it, stop the session and print the result."""
    controller = LifecycleController(ctx.obj["settings"], workspace_path=ctx.obj["workspace"])

    async def runner() -> Any:
        try:
            await controller.start()
            return await action(controller)
        finally:
            await controller.stop()

    try:
        result = asyncio.run(runner())
    except ZincLspError as e:
        logging.error(f"Error: {e}")
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    click.echo(json.dumps(result, indent=2, default=str))
    if controller.state is not SessionState.STOPPED:
        ctx.exit(1)


@click.group()
@click.option(
    "--workspace",
    "-w",
    default=".",
    show_default=True,
    type=click.Path(exists=True, file_okay=False),
    help="Path to the workspace directory",
)
@click.option("--server-path", envvar=SERVER_PATH_ENV, default=None, help="Path to the zinc_lsp executable")
@click.option("--server-arg", "server_args", multiple=True, help="Extra argument for the server (repeatable)")
@click.option("--timeout", type=float, default=None, help="Request timeout in seconds")
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
@click.pass_context
def main(
    ctx: click.Context,
    workspace: str,
    server_path: Optional[str],
    server_args: tuple,
    timeout: Optional[float],
    debug: bool,
) -> None:
    """Talk to the Zinc language server from the command line."""
    # Configure logging
    log_level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = ClientSettings.from_env(
        server_path=server_path,
        server_args=list(server_args) or None,
        request_timeout=timeout,
    )
    ctx.obj = {"workspace": workspace, "settings": settings}


@main.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Start the server and print the negotiated capabilities."""

    async def action(controller: LifecycleController) -> Any:
        return controller.capabilities.model_dump(mode="json")

    _run(ctx, action)


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, resolve_path=True))
@click.argument("line", type=int)
@click.argument("character", type=int)
@click.pass_context
def complete(ctx: click.Context, file: str, line: int, character: int) -> None:
    """Print completion items at LINE:CHARACTER (0-indexed) in FILE."""

    async def action(controller: LifecycleController) -> Any:
        controller.open_document(file)
        return await controller.completion(file, line, character)

    _run(ctx, action)


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, resolve_path=True))
@click.option("--wait", type=float, default=1.0, show_default=True, help="Seconds to wait for diagnostics")
@click.pass_context
def diagnostics(ctx: click.Context, file: str, wait: float) -> None:
    """Open FILE and print the diagnostics the server publishes for it."""

    async def action(controller: LifecycleController) -> Any:
        controller.open_document(file)
        await controller.documents.flush()
        await asyncio.sleep(wait)
        return controller.diagnostics(file)

    _run(ctx, action)


if __name__ == "__main__":
    main()  # pylint: disable=no-value-for-parameter
