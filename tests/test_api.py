from pathlib import Path

from fastapi.testclient import TestClient

from _fakes import FakeTransport, make_engine, memory_stores
from possync.core import config as config_module
from possync.core.config import AppConfig
from possync.web.main import build_app


def _config(tmp_path: Path) -> AppConfig:
    cfg = AppConfig()
    cfg.database.path = str(tmp_path / "runtime" / "store.db")
    cfg.logging.file = str(tmp_path / "runtime" / "service.log")
    return cfg


def _build_client(cfg: AppConfig, engine=None) -> TestClient:
    return TestClient(build_app(cfg, engine or make_engine()))


def test_healthz_returns_alive(tmp_path: Path):
    with _build_client(_config(tmp_path)) as client:
        resp = client.get("/api/healthz")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["ok"] is True
    assert payload["status"] == "alive"
    assert "checked_at" in payload


def test_readyz_returns_200_when_checks_pass(tmp_path: Path):
    with _build_client(_config(tmp_path)) as client:
        resp = client.get("/api/readyz")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["ok"] is True
    assert payload["checks"]["database_parent_ready"] is True
    assert payload["checks"]["log_parent_ready"] is True
    assert payload["checks"]["seller_context_cached"] is True
    assert payload["checks"]["auto_sync_enabled"] is False
    assert payload["errors"] == []


def test_readyz_returns_503_when_database_dir_unusable(tmp_path: Path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    cfg = _config(tmp_path)
    cfg.database.path = str(blocker / "store.db")

    with _build_client(cfg, make_engine(seller_id="")) as client:
        resp = client.get("/api/readyz")
    assert resp.status_code == 503
    payload = resp.json()
    assert payload["ok"] is False
    assert payload["checks"]["database_parent_ready"] is False
    assert any("database_parent_unavailable" in err for err in payload["errors"])
    assert "seller_context_not_cached" in payload["warnings"]


def test_sync_run_records_history(monkeypatch, tmp_path: Path):
    monkeypatch.setattr(config_module, "LAST_RUN_PATH", tmp_path / "runtime" / "last_run.json")
    monkeypatch.setattr(config_module, "RUN_HISTORY_PATH", tmp_path / "runtime" / "run_history.jsonl")
    stores = memory_stores()
    stores["customers"].add({"id": "c1", "isSynced": False, "name": "Asha"})
    transport = FakeTransport()

    with _build_client(_config(tmp_path), make_engine(transport, stores)) as client:
        run = client.post("/api/sync/run").json()
        history = client.get("/api/sync/history", params={"limit": 5}).json()
        status = client.get("/api/sync/status").json()

    assert run["success"] is True
    assert run["total_synced"] == 1
    assert run["run_type"] == "manual_web"
    assert history["count"] == 1
    assert history["items"][0]["run_type"] == "manual_web"
    assert status["sweep_count"] == 1
    assert status["entities"]["customers"]["pending"] == 0
    assert (tmp_path / "runtime" / "last_run.json").exists()


def test_schedule_and_cancel_debounced_sweep(tmp_path: Path):
    transport = FakeTransport()
    with _build_client(_config(tmp_path), make_engine(transport, debounce_sec=30)) as client:
        scheduled = client.post("/api/sync/schedule").json()
        cancelled = client.post("/api/sync/cancel").json()
        again = client.post("/api/sync/cancel").json()

    assert scheduled["scheduler"]["pending"] is True
    assert cancelled["cancelled"] is True
    assert cancelled["scheduler"]["pending"] is False
    assert again["cancelled"] is False
    assert transport.batches == []


def test_logs_endpoint_filters_by_event(tmp_path: Path):
    cfg = _config(tmp_path)
    log_file = Path(cfg.logging.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    log_file.write_text(
        "2026-02-22 10:00:00,000 [INFO] [sync] sweep_completed synced=2 failed=0\n"
        "2026-02-22 10:01:00,000 [INFO] [scheduler] sync_scheduled quiet_period_sec=30\n",
        encoding="utf-8",
    )

    with _build_client(cfg) as client:
        payload = client.get("/api/logs", params={"event": "sweep_completed"}).json()

    assert payload["count"] == 1
    assert payload["items"][0]["details"] == {"synced": "2", "failed": "0"}
