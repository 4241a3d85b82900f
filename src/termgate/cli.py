"""CLI entry point for termgate."""

from pathlib import Path

import click

from termgate import __version__
from termgate.config import load_config
from termgate.errors import ConfigError
from termgate.logging import setup_logging


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None) -> None:
    """termgate - Serve terminal applications over SSH."""
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config)
    except ConfigError as e:
        click.echo(f"Config error: {e}", err=True)
        raise SystemExit(1)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


@main.command()
@click.option("--port", "-p", type=int, default=None, help="Port to listen on.")
@click.option(
    "--max-sessions",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum concurrent sessions.",
)
@click.pass_context
def serve(ctx: click.Context, port: int | None, max_sessions: int | None) -> None:
    """Serve the demo counter application."""
    import asyncio
    from dataclasses import replace

    from termgate.app import AppRuntime
    from termgate.demo import COUNTER
    from termgate.errors import KeyDecodeError, ListenerStartError
    from termgate.server import Server

    config = ctx.obj["config"]
    if port is not None:
        config = replace(config, port=port)
    if max_sessions is not None:
        config = replace(config, max_sessions=max_sessions)

    async def _serve():
        try:
            server = Server(config, AppRuntime(), COUNTER)
        except (KeyDecodeError, OSError) as e:
            click.echo(f"Auth setup error: {e}", err=True)
            raise SystemExit(1)

        try:
            await server.start()
        except ListenerStartError as e:
            click.echo(f"Startup error: {e}", err=True)
            raise SystemExit(1)

        click.echo(f"Serving on port {server.get_port()}")
        click.echo("Press Ctrl+C to stop")
        await server.run_forever()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        pass


@main.command()
@click.option(
    "--directory",
    "-d",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Host key directory (defaults to host_key_directory from config).",
)
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing key")
@click.pass_context
def keygen(ctx: click.Context, directory: Path | None, force: bool) -> None:
    """Generate an ed25519 host key."""
    import asyncssh

    from termgate.server import HOST_KEY_NAMES

    if directory is None:
        directory = Path(ctx.obj["config"].host_key_directory)
    directory = directory.expanduser()

    key_path = directory / HOST_KEY_NAMES[0]
    if key_path.exists() and not force:
        click.echo(f"Error: {key_path} already exists (use --force to replace)", err=True)
        raise SystemExit(1)

    directory.mkdir(parents=True, exist_ok=True)
    key = asyncssh.generate_private_key("ssh-ed25519")
    key.write_private_key(str(key_path))
    key_path.chmod(0o600)
    key.write_public_key(str(key_path) + ".pub")

    click.echo(f"Wrote {key_path}")
    click.echo(f"Fingerprint: {key.get_fingerprint()}")


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"termgate version {__version__}")
