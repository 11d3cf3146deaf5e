from __future__ import annotations

import re
from pathlib import Path

LOG_LINE_RE = re.compile(
    r"^(?P<ts>\S+\s+\S+)\s+\[(?P<level>[A-Z]+)\]\s+\[(?P<module>[^\]]+)\]\s*(?P<message>.*)$"
)
DETAIL_RE = re.compile(r"(?P<key>[A-Za-z_][\w.]*)=(?P<value>\S*)")


def _tail_lines(path: str, n: int = 200) -> list[str]:
    p = Path(path)
    if not p.exists():
        return []
    lines = p.read_text(encoding="utf-8", errors="replace").splitlines()
    return lines[-n:]


def _parse_line(line: str) -> dict:
    match = LOG_LINE_RE.match(line)
    if not match:
        return {"raw": line, "ts": "", "level": "", "module": "", "event": "", "message": line, "details": {}}
    parsed = match.groupdict()
    message = parsed.get("message", "")
    head, _, rest = message.partition(" ")
    # Messages are "<event> key=value ..."; anything else is free text.
    event = head if head and "=" not in head else ""
    details = {m.group("key"): m.group("value") for m in DETAIL_RE.finditer(rest if event else message)}
    return {
        "raw": line,
        "ts": parsed.get("ts", ""),
        "level": parsed.get("level", ""),
        "module": parsed.get("module", ""),
        "event": event,
        "message": message,
        "details": details,
    }


def build_log_tail_payload(
    path: str,
    n: int = 200,
    level: str | None = None,
    module: str | None = None,
    event: str | None = None,
) -> dict:
    level_wanted = (level or "").strip().upper() or None
    module_wanted = (module or "").strip().lower() or None
    event_wanted = (event or "").strip() or None

    items: list[dict] = []
    for line in _tail_lines(path, n=n):
        item = _parse_line(line)
        if level_wanted and item["level"].upper() != level_wanted:
            continue
        if module_wanted and item["module"].strip().lower() != module_wanted:
            continue
        if event_wanted and item["event"] != event_wanted:
            continue
        items.append(item)

    return {
        "path": path,
        "n": n,
        "level": level_wanted,
        "module": module_wanted,
        "event": event_wanted,
        "count": len(items),
        "tail": "\n".join(item["raw"] for item in items),
        "items": items,
    }
