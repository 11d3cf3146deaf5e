from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

PROJECT_ROOT = Path(os.environ.get("POSSYNC_HOME") or (Path.home() / ".possync")).expanduser()
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = Path(os.environ.get("POSSYNC_CONFIG") or (PROJECT_ROOT / "config.yaml")).expanduser()
DEFAULT_CONFIG_TEMPLATE_PATH = Path(__file__).resolve().parents[2] / "config.yaml.example"
LAST_RUN_PATH = RUNTIME_DIR / "last_run.json"
RUN_HISTORY_PATH = RUNTIME_DIR / "run_history.jsonl"


def _expand_path(value: str) -> str:
    return str(Path(value).expanduser()) if value else value


class BackendConfig(BaseModel):
    base_url: str = "http://localhost:5000/api"
    # Optional bearer token; session acquisition itself happens outside this service.
    api_token: str = ""
    timeout_sec: int = Field(default=30, ge=1, le=600)
    health_timeout_sec: int = Field(default=5, ge=1, le=60)
    # Extra attempts for one request on connection errors, timeouts and 5xx.
    request_retries: int = Field(default=2, ge=0, le=10)


class SessionConfig(BaseModel):
    session_file: str = str(RUNTIME_DIR / "session.json")
    # Static seller id; when empty the cached session file is used.
    seller_id: str = ""
    # Profile sent to /auth/seller when no seller id is cached yet.
    email: str = ""
    uid: str = ""
    display_name: str = ""

    expand_session_file = field_validator("session_file")(_expand_path)


class SyncConfig(BaseModel):
    # Quiet period between the last local write and the triggered sweep.
    debounce_sec: float = Field(default=30, ge=0, le=3600)
    # 0 means disabled; positive values are seconds between periodic sweeps.
    poll_interval_sec: int = Field(default=30, ge=0, le=86400)
    max_retries: int = Field(default=3, ge=1, le=100)
    # When false, a failed batch request records the error but does not use up retries.
    charge_transport_failures: bool = True
    # What to do with a foreign key whose target has no remote id yet:
    # - defer: hold the dependent record back until the target syncs
    # - null: clear the reference and send the record anyway
    unresolved_reference_policy: Literal["defer", "null"] = "defer"
    remote_id_pattern: str = r"^[0-9a-fA-F]{24}$"
    # Empty means the built-in dependency order.
    entity_order: list[str] = Field(default_factory=list)
    # entity type name -> endpoint path; also declares extra entity types.
    endpoint_overrides: dict[str, str] = Field(default_factory=dict)

    @field_validator("remote_id_pattern")
    @classmethod
    def _check_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid remote_id_pattern: {exc}") from exc
        return value


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "service.log")
    max_bytes: int = Field(default=5 * 1024 * 1024, ge=0)
    backup_count: int = Field(default=3, ge=0)

    expand_log_file = field_validator("file")(_expand_path)


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "store.db")

    expand_db_path = field_validator("path")(_expand_path)


class AppConfig(BaseModel):
    backend: BackendConfig = Field(default_factory=BackendConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    web_bind_host: str = "127.0.0.1"
    web_port: int = 8766


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.session.session_file).parent.mkdir(parents=True, exist_ok=True)


def _dump_yaml(cfg: AppConfig) -> str:
    import yaml

    return yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False)


def load_config(path: Path | None = None) -> AppConfig:
    import yaml

    path = path or DEFAULT_CONFIG_PATH
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                data = yaml.safe_load(template_text) or {}
                cfg = AppConfig.model_validate(data)
                path.write_text(template_text, encoding="utf-8")
            except Exception:
                cfg = AppConfig()
                path.write_text(_dump_yaml(cfg), encoding="utf-8")
        else:
            cfg = AppConfig()
            path.write_text(_dump_yaml(cfg), encoding="utf-8")
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = AppConfig.model_validate(data)
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path | None = None):
    path = path or DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_dump_yaml(cfg), encoding="utf-8")
