from __future__ import annotations

import argparse
import socket
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
import uvicorn

from wormhole_web.client.api import (
    download,
    receive,
    resolve_inputs,
    send_paths,
    send_text,
    wait_for_status,
)
from wormhole_web.config import Settings
from wormhole_web.log import (
    console,
    make_file_progress,
    make_status_progress,
    setup_logging,
)
from wormhole_web.server.app import create_app
from wormhole_web.server.models import TransferState
from wormhole_web.validation import is_valid_exchange_code

if TYPE_CHECKING:
    from rich.progress import Progress, TaskID

    from wormhole_web.server.models import TransferRecord

DEFAULT_PORT = 8080


def parse_target(target: str) -> str:
    """Parse a target string into a base URL.

    Accepts formats like:
      - host              → http://host:8080
      - host:port         → http://host:port
      - http://host:port  → http://host:port  (passed through)
      - https://host:port → https://host:port (passed through)
    """
    # If the target already has a scheme, use it as-is.
    if target.startswith(("http://", "https://")):
        return target.rstrip("/")

    if ":" in target:
        host, port_str = target.rsplit(":", 1)
        try:
            port = int(port_str)
        except ValueError:
            console.print(f"[red]Invalid port in target: {target}")
            sys.exit(1)
        return f"http://{host}:{port}"
    return f"http://{target}:{DEFAULT_PORT}"


def _check_server(base_url: str) -> None:
    """Quick healthcheck so connection problems fail early and clearly."""
    try:
        httpx.get(f"{base_url}/api/health", timeout=5.0)
    except httpx.ConnectError:
        console.print(f"[red]Cannot connect to server at {base_url}. Is it running?")
        sys.exit(1)
    except httpx.TimeoutException:
        console.print(f"[red]Server at {base_url} did not respond in time.")
        sys.exit(1)


def _describe(record: TransferRecord) -> str:
    text = record.state.value
    if record.bytes_total:
        text += f" {record.progress:.0f}%"
    return text


def _status_updater(progress: Progress, task_id: TaskID):
    def update(record: TransferRecord) -> None:
        progress.update(task_id, description=_describe(record))
    return update


def _fail_on_http_error(exc: httpx.HTTPStatusError) -> None:
    try:
        detail = exc.response.json().get("detail", exc.response.text)
    except ValueError:
        detail = exc.response.text
    console.print(f"[red]Server rejected the request: {detail}")
    sys.exit(1)


def cmd_serve(args: argparse.Namespace) -> None:
    setup_logging()

    # Only flags given on the command line override the environment.
    overrides: dict[str, object] = {}
    for name in ("host", "port", "storage_dir", "static_dir"):
        value = getattr(args, name)
        if value is not None:
            overrides[name] = value
    settings = Settings(**overrides)

    # Fail fast if the port is already in use.
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((settings.host, settings.port))
        except OSError:
            console.print(
                f"[red]Port {settings.port} is already in use. "
                "Is another wormhole-web server running?"
            )
            sys.exit(1)

    app = create_app(settings=settings)
    console.print(
        f"[bold green]wormhole-web server[/] starting on "
        f"[cyan]{settings.host}:{settings.port}[/] "
        f"(storage={settings.storage_dir})"
    )
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level="warning",
        timeout_graceful_shutdown=int(settings.shutdown_timeout_seconds),
    )


def cmd_send(args: argparse.Namespace) -> None:
    setup_logging()

    if not args.text and not args.paths:
        console.print("[red]Usage: wormhole-web send (--text TEXT | PATH...)")
        sys.exit(1)

    base_url = parse_target(args.server)
    items = None
    if not args.text:
        try:
            items = resolve_inputs(args.paths)
        except FileNotFoundError as exc:
            console.print(f"[red]{exc}")
            sys.exit(1)

    _check_server(base_url)

    try:
        if items is None:
            transfer_id = send_text(base_url, args.text)
        else:
            console.print(f"Uploading [bold]{len(items)}[/] file(s) to [cyan]{base_url}[/]")
            transfer_id = send_paths(base_url, items)
    except httpx.HTTPStatusError as exc:
        _fail_on_http_error(exc)
        return

    progress = make_status_progress()
    with progress:
        task_id = progress.add_task("sending", total=None)
        record = wait_for_status(
            base_url,
            transfer_id,
            until=lambda r: r.state == TransferState.WAITING,
            on_update=_status_updater(progress, task_id),
        )
    if record.state == TransferState.ERROR:
        console.print(f"[red]Send failed: {record.error}")
        sys.exit(1)

    console.print(f"Wormhole code is: [bold]{record.code}[/]")
    console.print("On the other computer, run: wormhole receive")

    progress = make_status_progress()
    with progress:
        task_id = progress.add_task("waiting for receiver", total=None)
        record = wait_for_status(
            base_url,
            transfer_id,
            on_update=_status_updater(progress, task_id),
            timeout=args.wait_timeout,
        )
    if record.state != TransferState.COMPLETE:
        console.print(f"[red]Send failed: {record.error}")
        sys.exit(1)
    console.print("[green]Transfer complete.")


def cmd_receive(args: argparse.Namespace) -> None:
    setup_logging()

    if not is_valid_exchange_code(args.code):
        console.print(f"[red]Invalid wormhole code: {args.code}")
        sys.exit(1)

    base_url = parse_target(args.server)
    _check_server(base_url)

    try:
        transfer_id = receive(base_url, args.code)
    except httpx.HTTPStatusError as exc:
        _fail_on_http_error(exc)
        return

    progress = make_status_progress()
    with progress:
        task_id = progress.add_task("receiving", total=None)
        record = wait_for_status(
            base_url,
            transfer_id,
            on_update=_status_updater(progress, task_id),
            timeout=args.wait_timeout,
        )
    if record.state == TransferState.ERROR:
        console.print(f"[red]Receive failed: {record.error}")
        sys.exit(1)

    if record.text_content is not None:
        console.print(record.text_content, markup=False, highlight=False)
        return

    files = make_file_progress()
    with files:
        task_id = files.add_task(record.filename or "download", total=record.bytes_total or None)
        target = download(
            base_url,
            record,
            Path(args.output_dir),
            progress_callback=lambda n: files.advance(task_id, n),
        )
    console.print(f"[green]Saved {target}")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="wormhole-web",
        description="Send and receive files and text through a wormhole-web server",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # --- serve ---
    lp = sub.add_parser("serve", help="Start the wormhole-web server")
    lp.add_argument("--host", default=None, help="Bind address (default: 0.0.0.0)")
    lp.add_argument(
        "--port", type=int, default=None, help=f"Listen port (default: {DEFAULT_PORT})",
    )
    lp.add_argument("--storage-dir", default=None, help="Directory for transfer storage")
    lp.add_argument("--static-dir", default=None, help="Directory of static assets to serve")
    lp.set_defaults(func=cmd_serve)

    # --- send ---
    sp = sub.add_parser("send", help="Send text or files through a server")
    sp.add_argument("paths", nargs="*", help="Files or directories to send")
    sp.add_argument("--text", "-t", default=None, help="Send this text instead of files")
    sp.add_argument(
        "--server", "-s", default="localhost", help="Server host[:port] or URL",
    )
    sp.add_argument(
        "--wait-timeout",
        type=float,
        default=3600.0,
        help="Seconds without progress before giving up (default: 3600)",
    )
    sp.set_defaults(func=cmd_send)

    # --- receive ---
    rp = sub.add_parser("receive", help="Receive text or a file with a wormhole code")
    rp.add_argument("code", help="Wormhole code, e.g. 7-guitarist-revenge")
    rp.add_argument(
        "--server", "-s", default="localhost", help="Server host[:port] or URL",
    )
    rp.add_argument(
        "--output-dir", "-o", default=".", help="Directory for received files",
    )
    rp.add_argument(
        "--wait-timeout",
        type=float,
        default=3600.0,
        help="Seconds without progress before giving up (default: 3600)",
    )
    rp.set_defaults(func=cmd_receive)

    args = parser.parse_args()
    args.func(args)
