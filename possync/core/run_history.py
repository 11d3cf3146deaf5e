from __future__ import annotations

import json
from pathlib import Path

from possync.core import config as config_module


def record_run(summary: dict) -> None:
    """Persist the latest sweep summary and append it to the run history."""
    last_path = Path(config_module.LAST_RUN_PATH)
    history_path = Path(config_module.RUN_HISTORY_PATH)
    last_path.parent.mkdir(parents=True, exist_ok=True)
    last_path.write_text(json.dumps(summary, ensure_ascii=False, indent=2), encoding="utf-8")
    history_path.parent.mkdir(parents=True, exist_ok=True)
    with history_path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(summary, ensure_ascii=False))
        f.write("\n")


def read_run_history(limit: int = 50) -> list[dict]:
    history_path = Path(config_module.RUN_HISTORY_PATH)
    if limit <= 0 or not history_path.exists():
        return []

    lines = history_path.read_text(encoding="utf-8", errors="replace").splitlines()
    out: list[dict] = []
    for line in reversed(lines):
        if len(out) >= limit:
            break
        raw = line.strip()
        if not raw:
            continue
        try:
            payload = json.loads(raw)
        except ValueError:
            payload = {"raw": raw, "parse_error": True}
        if isinstance(payload, dict):
            out.append(payload)
    return out
