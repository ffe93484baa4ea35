from __future__ import annotations

import json
import logging

import typer
import uvicorn

from .api import RemoteSessionLog
from .config import load_config
from .storage import FileStorage, PersistenceMirror

app = typer.Typer(
    help="Deep Focus session sync agent (serve the bridge, inspect or repair focus state).",
    no_args_is_help=True,
)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind address (default DEEPFOCUS_BRIDGE_HOST)."),
    port: int | None = typer.Option(None, "--port", help="Bind port (default DEEPFOCUS_BRIDGE_PORT)."),
    offline: bool = typer.Option(False, "--offline", help="Use an in-memory session log instead of the backend."),
    no_activity: bool = typer.Option(False, "--no-activity", help="Disable inactivity-based pause/resume."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    from .bridge import build_app

    _setup_logging(verbose)
    cfg = load_config(offline=offline or None)
    if not cfg.user_id:
        typer.echo("[deepfocus] DEEPFOCUS_USER_ID is not set; focus toggles will be ignored until a user is bound")
    bridge = build_app(cfg, with_activity_monitor=not no_activity)
    bind_host = host or cfg.bridge_host
    bind_port = port or cfg.bridge_port
    typer.echo(f"[deepfocus] Bridge listening on http://{bind_host}:{bind_port} (ws://{bind_host}:{bind_port}/ws)")
    uvicorn.run(bridge, host=bind_host, port=bind_port, log_level="debug" if verbose else "info")


@app.command("status")
def status() -> None:
    cfg = load_config(offline=True)
    mirror = PersistenceMirror(FileStorage(cfg.state_dir), key=cfg.storage_key)
    snapshot, corrupted = mirror.load_validated()
    if corrupted:
        typer.echo("[deepfocus] Stored snapshot is corrupted (unreadable); it will be reset on next start")
        raise typer.Exit(code=1)
    if snapshot is None:
        typer.echo("[deepfocus] No stored focus state")
        return
    typer.echo(json.dumps(snapshot.model_dump(mode="json"), indent=2, sort_keys=True))


@app.command("cleanup-orphans")
def cleanup_orphans(
    user_id: str | None = typer.Option(None, "--user-id", help="User whose open sessions should be closed."),
) -> None:
    cfg = load_config()
    uid = user_id or cfg.user_id
    if not uid:
        typer.echo("[deepfocus] Missing --user-id (or DEEPFOCUS_USER_ID)")
        raise typer.Exit(code=2)
    closed = RemoteSessionLog(cfg.base_url, cfg.auth_token).cleanup_orphans(uid)
    typer.echo(f"[deepfocus] Closed {closed} orphaned session(s) for {uid}")


def main() -> None:
    app()
