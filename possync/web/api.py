from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from possync.core import config as config_module
from possync.core.config import AppConfig
from possync.core.log_tail import build_log_tail_payload
from possync.core.run_history import read_run_history, record_run
from possync.sync import SyncEngine

router = APIRouter(prefix="/api")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _engine(request: Request) -> SyncEngine:
    return request.app.state.engine


def _config(request: Request) -> AppConfig:
    return request.app.state.config


def _build_readiness_payload(request: Request) -> dict:
    cfg = _config(request)
    engine = _engine(request)
    checks: dict[str, bool] = {
        "database_parent_ready": False,
        "log_parent_ready": False,
        "seller_context_cached": False,
        "auto_sync_running": False,
        "auto_sync_enabled": False,
    }
    warnings: list[str] = []
    errors: list[str] = []

    auto_sync = engine.auto_sync.snapshot()
    checks["auto_sync_running"] = bool(auto_sync.get("running"))
    checks["auto_sync_enabled"] = bool(auto_sync.get("enabled"))
    checks["seller_context_cached"] = bool(engine.session.cached_seller_id())
    if not checks["seller_context_cached"]:
        warnings.append("seller_context_not_cached")

    try:
        Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
        checks["database_parent_ready"] = True
    except OSError as e:
        errors.append(f"database_parent_unavailable: {e}")

    try:
        Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
        checks["log_parent_ready"] = True
    except OSError as e:
        errors.append(f"log_parent_unavailable: {e}")

    if checks["auto_sync_enabled"] and not checks["auto_sync_running"]:
        warnings.append("auto_sync_enabled_but_not_running")

    last = engine.orchestrator.last_summary
    if last is not None and last.plan_invalid:
        warnings.append("plan_invalid")

    ok = checks["database_parent_ready"] and checks["log_parent_ready"]
    return {
        "ok": ok,
        "checked_at": _now_iso(),
        "checks": checks,
        "warnings": warnings,
        "errors": errors,
        "auto_sync": auto_sync,
        "scheduler": engine.scheduler.snapshot(),
    }


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": _now_iso(),
    }


@router.get("/readyz")
def readyz(request: Request):
    payload = _build_readiness_payload(request)
    return JSONResponse(status_code=200 if payload["ok"] else 503, content=payload)


@router.get("/sync/status")
async def sync_status(request: Request):
    return await _engine(request).status()


@router.post("/sync/run")
async def sync_run(request: Request):
    """Run a sweep now, or join the one already running."""
    summary = (await _engine(request).run_all()).model_dump()
    summary["run_type"] = "manual_web"
    record_run(summary)
    return summary


@router.post("/sync/schedule")
async def sync_schedule(request: Request):
    """Hook for local writes: (re)arm the debounced sweep."""
    engine = _engine(request)
    engine.schedule()
    return {"ok": True, "scheduler": engine.scheduler.snapshot()}


@router.post("/sync/cancel")
async def sync_cancel(request: Request):
    engine = _engine(request)
    cancelled = engine.cancel()
    return {"ok": True, "cancelled": cancelled, "scheduler": engine.scheduler.snapshot()}


@router.post("/sync/retry-failed")
async def sync_retry_failed(request: Request, entity_type: Optional[list[str]] = Query(None)):
    summary = (await _engine(request).retry_failed(entity_type or None)).model_dump()
    summary["run_type"] = "retry_failed"
    record_run(summary)
    return summary


@router.post("/sync/pull")
async def sync_pull(request: Request, entity_type: Optional[list[str]] = Query(None)):
    return (await _engine(request).pull_all(entity_type or None)).model_dump()


@router.get("/sync/history")
def sync_history(limit: int = 50):
    limit_sanitized = min(max(int(limit), 1), 500)
    items = read_run_history(limit=limit_sanitized)
    return {
        "path": str(config_module.RUN_HISTORY_PATH),
        "limit": limit_sanitized,
        "count": len(items),
        "items": items,
    }


@router.get("/logs")
def get_logs(
    request: Request,
    n: int = 200,
    level: Optional[str] = None,
    module: Optional[str] = None,
    event: Optional[str] = None,
):
    cfg = _config(request)
    return build_log_tail_payload(cfg.logging.file, n=n, level=level, module=module, event=event)
