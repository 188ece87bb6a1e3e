"""imageseal CLI."""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import sys
import traceback
from pathlib import Path

import click

from imageseal import __version__
from imageseal.config import STORE_BACKENDS, EngineConfig
from imageseal.engine import ProvenanceEngine
from imageseal.errors import KeyNotFound, MalformedKey
from imageseal.provenance.keys import KeyStatus
from imageseal.provenance.signing import KeyPair, load_private_key_file
from imageseal.security import safe_read_file

DEFAULT_STORE_DIR = Path(".imageseal")
DEFAULT_KEY_FILE = "private-key.json"


def handle_error(error: Exception, debug: bool) -> None:
    """Handle errors with structured output.

    Args:
        error: The exception that occurred
        debug: Whether to show full traceback
    """
    if debug:
        traceback.print_exc()
    else:
        click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def build_config(config_path: Path | None, store: str | None, store_dir: Path | None) -> EngineConfig:
    """Resolve engine configuration from a file or the environment plus CLI overrides.

    Without a config file or IMAGESEAL_STORE the CLI uses the local store,
    since the memory store does not outlive a single invocation.
    """
    config = EngineConfig.from_yaml(config_path) if config_path else EngineConfig.from_env()

    if store is None and config_path is None and "IMAGESEAL_STORE" not in os.environ:
        store = "local"

    backend = store or config.store_backend
    root = store_dir or config.store_dir
    if backend == "local" and root is None:
        root = DEFAULT_STORE_DIR

    return dataclasses.replace(config, store_backend=backend, store_dir=root)


def get_engine(ctx: click.Context) -> ProvenanceEngine:
    """Get or create the engine for this invocation."""
    if "engine" not in ctx.obj:
        ctx.obj["engine"] = ProvenanceEngine.from_config(ctx.obj["config"])
    return ctx.obj["engine"]


def require_user(ctx: click.Context) -> str:
    """Identity of the caller (--user or IMAGESEAL_USER)."""
    user = ctx.obj.get("user")
    if not user:
        raise click.UsageError("No user given. Pass --user or set IMAGESEAL_USER.")
    return user


def write_private_key(path: Path, public_key: str, private_key: str) -> None:
    """Write the private key document, readable by the owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(KeyPair(public_key=public_key, private_key=private_key).private_key_document())


@click.group()
@click.version_option(version=__version__, prog_name="sealctl")
@click.option('--store', type=click.Choice(STORE_BACKENDS), help='Store backend (default: local)')
@click.option('--store-dir', type=click.Path(file_okay=False, path_type=Path), help='Local store directory (default: .imageseal)')
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True, dir_okay=False, path_type=Path), help='YAML config file')
@click.option('--user', '-u', envvar='IMAGESEAL_USER', help='Identity to act as')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False), default='WARNING')
@click.option('--debug', is_flag=True, help='Enable debug mode (show full tracebacks)')
@click.pass_context
def cli(
    ctx: click.Context,
    store: str | None,
    store_dir: Path | None,
    config_path: Path | None,
    user: str | None,
    log_level: str,
    debug: bool,
):
    """imageseal CLI - sign images at upload and verify their provenance."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['debug'] = debug
    ctx.obj['user'] = user
    try:
        ctx.obj['config'] = build_config(config_path, store, store_dir)
    except (ValueError, OSError) as e:
        raise click.BadParameter(str(e)) from e


@cli.group(name="keys")
def keys():
    """Manage your signing key pair."""


@keys.command(name="ensure")
@click.option('--out', '-o', type=click.Path(dir_okay=False, path_type=Path), default=DEFAULT_KEY_FILE, show_default=True)
@click.pass_context
def keys_ensure(ctx: click.Context, out: Path):
    """Provision a key pair if you have no usable one.

    The private key is written to --out once and is not stored anywhere
    else. Losing it means you can no longer sign new uploads.
    """
    debug = ctx.obj.get('debug', False)
    user = require_user(ctx)

    try:
        provisioning = get_engine(ctx).key_manager.ensure_public_key(user)
        if provisioning.exists:
            click.echo(f"Public key already on file for {user}; nothing to do.")
            return

        write_private_key(out, provisioning.public_key, provisioning.private_key)
        click.echo(f"Generated a new key pair for {user}")
        click.echo(f"Private key written to {out} - keep it safe, it cannot be recovered.")
    except Exception as e:
        handle_error(e, debug)


@keys.command(name="import")
@click.argument('public_key_file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def keys_import(ctx: click.Context, public_key_file: Path):
    """Register a public key you generated yourself.

    PUBLIC_KEY_FILE holds a base64 DER or PEM public key. The private half
    stays with you. A usable key already on file is never replaced.
    """
    debug = ctx.obj.get('debug', False)
    user = require_user(ctx)

    try:
        public_key = public_key_file.read_text(encoding="utf-8")
        provisioning = get_engine(ctx).key_manager.register_public_key(user, public_key)
        if provisioning.exists:
            click.echo(f"This public key is already on file for {user}; nothing to do.")
        else:
            click.echo(f"Registered public key for {user}")
    except Exception as e:
        handle_error(e, debug)


@keys.command(name="regenerate")
@click.option('--out', '-o', type=click.Path(dir_okay=False, path_type=Path), default=DEFAULT_KEY_FILE, show_default=True)
@click.option('--yes', is_flag=True, help='Confirm that earlier images will stop verifying')
@click.pass_context
def keys_regenerate(ctx: click.Context, out: Path, yes: bool):
    """Replace your key pair.

    Every image signed under the old key stops verifying.
    """
    debug = ctx.obj.get('debug', False)
    user = require_user(ctx)

    if not yes:
        click.echo("Refusing to regenerate without --yes: images signed with the current key will no longer verify.", err=True)
        sys.exit(2)

    try:
        engine = get_engine(ctx)
        private_key = engine.key_manager.regenerate_key_pair(user)
        public_key = engine.key_manager.resolve_public_key(user, self_heal=False)
        write_private_key(out, public_key, private_key)
        click.echo(f"Regenerated key pair for {user}")
        click.echo(f"Private key written to {out}")
    except Exception as e:
        handle_error(e, debug)


@keys.command(name="status")
@click.pass_context
def keys_status(ctx: click.Context):
    """Show whether you have a usable public key."""
    debug = ctx.obj.get('debug', False)
    user = require_user(ctx)

    try:
        manager = get_engine(ctx).key_manager
        record = manager.get_key_record(user)
        status = manager.classify(record.public_key if record else None)
        click.echo(f"User:    {user}")
        click.echo(f"Status:  {status.value}")
        if record is not None:
            click.echo(f"Updated: {record.updated_at}")
        if status is KeyStatus.UNPROVISIONED:
            click.echo("Run 'sealctl keys ensure' to generate a key pair.")
        elif status is KeyStatus.BROKEN:
            click.echo("The stored key is corrupt. Run 'sealctl keys regenerate --yes' to replace it.")
    except Exception as e:
        handle_error(e, debug)


@keys.command(name="show")
@click.argument('user_id', required=False)
@click.pass_context
def keys_show(ctx: click.Context, user_id: str | None):
    """Print the stored public key of a user (default: yourself)."""
    debug = ctx.obj.get('debug', False)
    target = user_id or require_user(ctx)

    try:
        click.echo(get_engine(ctx).key_manager.resolve_public_key(target, self_heal=False))
    except (KeyNotFound, MalformedKey) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        handle_error(e, debug)


@cli.command()
@click.argument('file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--key', '-k', 'key_file', required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path), help='Private key file')
@click.pass_context
def upload(ctx: click.Context, file: Path, key_file: Path):
    """Sign FILE with your private key and store it."""
    debug = ctx.obj.get('debug', False)
    user = require_user(ctx)

    try:
        engine = get_engine(ctx)
        private_key = load_private_key_file(key_file)
        data = safe_read_file(file, engine.config.limits)
        record = engine.registrar.register(user, file.name, data, private_key)

        click.echo(f"Uploaded {record.file_name} as {record.id}")
        click.echo(f"Fingerprint: {record.fingerprint}")
    except Exception as e:
        handle_error(e, debug)


@cli.command()
@click.argument('file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--json', 'as_json', is_flag=True, help='Print the verdict as JSON')
@click.option('--report-dir', type=click.Path(file_okay=False, path_type=Path), help='Write JSON and Markdown reports here')
@click.pass_context
def verify(ctx: click.Context, file: Path, as_json: bool, report_dir: Path | None):
    """Verify FILE against your uploaded images.

    Exits 0 only when the image is verified.
    """
    debug = ctx.obj.get('debug', False)
    user = require_user(ctx)

    try:
        verifier = get_engine(ctx).verifier
        if report_dir:
            verdict, paths = verifier.verify_and_report(file, user, report_dir)
        else:
            verdict, paths = verifier.verify_file(file, user), {}
    except Exception as e:
        handle_error(e, debug)
        return

    if as_json:
        click.echo(json.dumps(verdict.to_dict(include_trace=debug), indent=2, sort_keys=True))
    else:
        click.echo(f"{'✓' if verdict.verified else '✗'} {verdict.title}")
        click.echo(f"  {verdict.detail}")
        if verdict.image_id:
            click.echo(f"  Image:    {verdict.image_id} (uploaded {verdict.uploaded_at})")
        if verdict.minor_difference_tolerated:
            click.echo(f"  Distance: {verdict.fingerprint_distance}")
        if verdict.error_id:
            click.echo(f"  Error ID: {verdict.error_id}")
        if debug:
            for line in verdict.trace:
                click.echo(f"  trace: {line}", err=True)
        for kind, path in paths.items():
            click.echo(f"  {kind} report: {path}")

    sys.exit(0 if verdict.verified else 1)


@cli.command(name="list")
@click.pass_context
def list_images(ctx: click.Context):
    """List your uploaded images, newest first."""
    debug = ctx.obj.get('debug', False)
    user = require_user(ctx)

    try:
        records = get_engine(ctx).registrar.list_images(user)
        if not records:
            click.echo("No images uploaded.")
            return
        for record in records:
            click.echo(f"{record.id}  {record.created_at}  {record.file_size:>10}  {record.file_name}")
    except Exception as e:
        handle_error(e, debug)


@cli.command()
@click.argument('image_id')
@click.pass_context
def delete(ctx: click.Context, image_id: str):
    """Delete one of your images."""
    debug = ctx.obj.get('debug', False)
    user = require_user(ctx)

    try:
        deleted = get_engine(ctx).registrar.delete_image(image_id, user)
    except Exception as e:
        handle_error(e, debug)
        return

    if not deleted:
        click.echo(f"Error: no image {image_id}", err=True)
        sys.exit(1)
    click.echo(f"Deleted {image_id}")


@cli.command()
@click.option('--host', default='127.0.0.1', help='Host to bind to')
@click.option('--port', '-p', default=8000, type=int, help='Port to bind to')
@click.pass_context
def serve(ctx: click.Context, host: str, port: int):
    """Start the imageseal HTTP server.

    Callers identify themselves with the X-User-Id header, which is trusted
    as-is. Run it behind a proxy that sets that header.

    Examples:
      sealctl serve                           # Start server on default port
      sealctl serve --port 8080               # Start on port 8080
      sealctl --store-dir ./data serve        # Serve a specific local store
    """
    import uvicorn

    from imageseal.server import create_app

    debug = ctx.obj.get('debug', False)

    try:
        config = ctx.obj['config']
        click.echo(f"Starting imageseal server on http://{host}:{port}")
        click.echo(f"API documentation: http://{host}:{port}/docs")
        click.echo(f"Store: {config.store_backend}" + (f" ({config.store_dir})" if config.store_dir else ""))

        app = create_app(engine=get_engine(ctx), debug=debug)
        uvicorn.run(app, host=host, port=port, log_level="debug" if debug else "info")
    except Exception as e:
        handle_error(e, debug)


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
