from pathlib import Path

import pytest
from pydantic import ValidationError

from possync.core import config as config_module


def test_load_config_creates_from_template(monkeypatch, tmp_path: Path):
    template = tmp_path / "config.yaml.example"
    target = tmp_path / "config.yaml"
    runtime_dir = tmp_path / "runtime"
    template.write_text(
        "\n".join(
            [
                "backend:",
                "  base_url: http://pos.example:5000/api",
                "  api_token: tpl_token",
                "sync:",
                "  debounce_sec: 5",
                '  unresolved_reference_policy: "null"',
                "logging:",
                f"  file: {runtime_dir / 'service.log'}",
                "database:",
                f"  path: {runtime_dir / 'store.db'}",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", template)
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.backend.base_url == "http://pos.example:5000/api"
    assert cfg.backend.api_token == "tpl_token"
    assert cfg.sync.debounce_sec == 5
    assert cfg.sync.unresolved_reference_policy == "null"
    assert cfg.database.path == str(runtime_dir / "store.db")


def test_load_config_creates_defaults_when_template_missing(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", tmp_path / "missing-template.yaml")
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.sync.unresolved_reference_policy == "defer"
    assert cfg.sync.max_retries == 3


def test_load_config_falls_back_when_template_invalid(monkeypatch, tmp_path: Path):
    template = tmp_path / "config.yaml.example"
    target = tmp_path / "config.yaml"
    template.write_text("backend: [invalid\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", template)
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.sync.debounce_sec == 30


def test_load_config_reads_existing_file_and_round_trips(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)
    cfg = config_module.AppConfig()
    cfg.sync.entity_order = ["customers", "orders", "products"]
    cfg.sync.endpoint_overrides = {"orders": "sales"}
    config_module.save_config(cfg, target)

    loaded = config_module.load_config(target)

    assert loaded.sync.entity_order == ["customers", "orders", "products"]
    assert loaded.sync.endpoint_overrides == {"orders": "sales"}


def test_paths_expand_home(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("HOME", str(tmp_path))

    cfg = config_module.AppConfig.model_validate({"database": {"path": "~/pos/store.db"}})

    assert cfg.database.path == str(tmp_path / "pos" / "store.db")


def test_invalid_settings_are_rejected():
    with pytest.raises(ValidationError):
        config_module.AppConfig.model_validate({"sync": {"remote_id_pattern": "(["}})
    with pytest.raises(ValidationError):
        config_module.AppConfig.model_validate({"sync": {"unresolved_reference_policy": "drop"}})
