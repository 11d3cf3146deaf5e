from __future__ import annotations

import asyncio
import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from possync.core.config import DEFAULT_CONFIG_PATH, load_config
from possync.core.log_tail import build_log_tail_payload
from possync.core.logging_setup import setup_logging
from possync.core.run_history import record_run
from possync.sync import SyncEngine
from possync.sync.entities import build_entity_types
from possync.sync.errors import SyncError

app = typer.Typer(add_completion=False)
console = Console()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _print_json(payload: Any):
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _build_engine(path: Optional[Path] = None) -> SyncEngine:
    cfg = load_config(path)
    setup_logging(cfg.logging.level, cfg.logging.file, cfg.logging.max_bytes, cfg.logging.backup_count)
    return SyncEngine.from_config(cfg)


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml."""
    cfg = load_config(path)
    data = cfg.model_dump()
    if data["backend"].get("api_token"):
        data["backend"]["api_token"] = "***"
    _print_json(data)


@app.command("config-validate")
def config_validate(
    path: Path = DEFAULT_CONFIG_PATH,
    strict: bool = typer.Option(False, "--strict", help="Return non-zero when validation fails."),
):
    """Validate config and runtime prerequisites."""
    out: dict[str, Any] = {
        "ok": True,
        "checked_at": _now_iso(),
        "config_path": str(path),
        "checks": {
            "config_exists": path.exists(),
            "base_url_valid": False,
            "seller_context_configured": False,
            "entity_types_valid": False,
            "web_port_valid": False,
            "poll_interval_valid": False,
            "database_parent_ready": False,
            "log_parent_ready": False,
        },
        "warnings": [],
        "errors": [],
    }

    try:
        cfg = load_config(path)
    except Exception as e:
        out["ok"] = False
        out["errors"].append(f"load_config_failed: {e}")
        _print_json(out)
        if strict:
            raise typer.Exit(2)
        return

    base_url = str(cfg.backend.base_url or "").strip()
    out["checks"]["base_url_valid"] = bool(re.match(r"^https?://", base_url))
    if not out["checks"]["base_url_valid"]:
        out["errors"].append(f"base_url_invalid: {base_url!r}")

    out["checks"]["seller_context_configured"] = bool(
        cfg.session.seller_id or cfg.session.email or Path(cfg.session.session_file).exists()
    )
    if not out["checks"]["seller_context_configured"]:
        out["warnings"].append("seller_context_missing: set session.seller_id or session.email")

    try:
        entity_types = build_entity_types(cfg.sync.entity_order or None, cfg.sync.endpoint_overrides)
        out["checks"]["entity_types_valid"] = True
        out["entity_types"] = [{"name": et.name, "endpoint": et.endpoint} for et in entity_types]
    except SyncError as e:
        out["errors"].append(f"entity_types_invalid: {e}")

    port = int(cfg.web_port)
    out["checks"]["web_port_valid"] = 1 <= port <= 65535
    if not out["checks"]["web_port_valid"]:
        out["errors"].append(f"web_port_out_of_range: {port}")

    poll_interval = int(cfg.sync.poll_interval_sec or 0)
    out["checks"]["poll_interval_valid"] = 0 <= poll_interval <= 86400
    if not out["checks"]["poll_interval_valid"]:
        out["errors"].append(f"poll_interval_out_of_range: {poll_interval}")
    elif 0 < poll_interval < 10:
        out["warnings"].append(f"poll_interval_too_short: {poll_interval} (<10 may hammer the backend)")

    try:
        Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
        out["checks"]["database_parent_ready"] = True
    except OSError as e:
        out["errors"].append(f"database_parent_unavailable: {e}")

    try:
        Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
        out["checks"]["log_parent_ready"] = True
    except OSError as e:
        out["errors"].append(f"log_parent_unavailable: {e}")

    out["ok"] = len(out["errors"]) == 0
    _print_json(out)
    if strict and not out["ok"]:
        raise typer.Exit(2)


@app.command()
def status():
    """Show pending, failed and exhausted records per entity type."""
    engine = _build_engine()
    counts = asyncio.run(engine.pending_counts())

    table = Table(title="possync status")
    table.add_column("Entity type")
    table.add_column("Endpoint")
    table.add_column("Total", justify="right")
    table.add_column("Pending", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Waiting", justify="right")
    table.add_column("Exhausted", justify="right")
    table.add_column("Tombstones", justify="right")
    for et in engine.entity_types:
        row = counts.get(et.name, {})
        table.add_row(
            et.name,
            et.endpoint,
            str(row.get("total", 0)),
            str(row.get("pending", 0)),
            str(row.get("failed", 0)),
            str(row.get("waiting", 0)),
            str(row.get("exhausted", 0)),
            str(row.get("tombstones", 0)),
        )
    console.print(table)


@app.command("run-once")
def run_once(
    dry_run: bool = typer.Option(False, "--dry-run", help="Only count pending records, no remote calls."),
    run_type: str = typer.Option("manual_cli", "--run-type", help="Label stored in the run history."),
):
    """Run one sweep and print summary JSON."""
    try:
        engine = _build_engine()
        if dry_run:
            _print_json(
                {
                    "dry_run": True,
                    "run_type": run_type,
                    "checked_at": _now_iso(),
                    "entities": asyncio.run(engine.pending_counts()),
                }
            )
            return
        summary = asyncio.run(engine.run_all()).model_dump()
    except Exception as e:
        _print_json({"ok": False, "error": str(e)})
        raise typer.Exit(2)

    summary["run_type"] = run_type
    record_run(summary)
    _print_json(summary)
    if not summary.get("success"):
        raise typer.Exit(2)


@app.command("retry-failed")
def retry_failed(
    entity_type: Optional[list[str]] = typer.Option(None, "--entity-type", help="Limit to these entity types."),
):
    """Clear retry state of failed records and run a sweep."""
    try:
        engine = _build_engine()
        summary = asyncio.run(engine.retry_failed(entity_type or None)).model_dump()
    except Exception as e:
        _print_json({"ok": False, "error": str(e)})
        raise typer.Exit(2)
    summary["run_type"] = "retry_failed"
    record_run(summary)
    _print_json(summary)
    if not summary.get("success"):
        raise typer.Exit(2)


@app.command()
def pull(
    entity_type: Optional[list[str]] = typer.Option(None, "--entity-type", help="Limit to these entity types."),
):
    """Pull remote changes since the last pull."""
    try:
        engine = _build_engine()
        result = asyncio.run(engine.pull_all(entity_type or None)).model_dump()
    except Exception as e:
        _print_json({"ok": False, "error": str(e)})
        raise typer.Exit(2)
    _print_json(result)
    if not result.get("success"):
        raise typer.Exit(2)


@app.command("logs-tail")
def logs_tail(
    n: int = typer.Option(200, "--n", min=1),
    level: Optional[str] = typer.Option(None, "--level", help="Filter by log level (e.g. INFO)."),
    module: Optional[str] = typer.Option(None, "--module", help="Filter by logger name (e.g. sync)."),
    event: Optional[str] = typer.Option(None, "--event", help="Filter by event name (e.g. batch_failed)."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
):
    """Tail service log file."""
    cfg = load_config()
    payload = build_log_tail_payload(cfg.logging.file, n=n, level=level, module=module, event=event)
    if json_output:
        _print_json(payload)
        return
    print(payload.get("tail", ""))


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Run the HTTP service with auto sync."""
    from possync.web.main import main as web_main

    web_main(host=host, port=port)


def main():
    app()


if __name__ == "__main__":
    main()
