import asyncio
import json
from pathlib import Path

from possync.sync.errors import TransportError
from possync.sync.session import SessionContext


class _Resolver:
    def __init__(self, result="S-1"):
        self.result = result
        self.calls = []

    async def resolve_seller(self, profile):
        self.calls.append(profile)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def test_reads_cached_seller_from_session_file(tmp_path: Path):
    session_file = tmp_path / "session.json"
    session_file.write_text(json.dumps({"currentUser": {"sellerId": "S-7"}}), encoding="utf-8")
    resolver = _Resolver()

    session = SessionContext(str(session_file), resolver, {"email": "a@b.c"})

    assert asyncio.run(session.seller_id()) == "S-7"
    assert resolver.calls == []


def test_resolves_once_and_persists(tmp_path: Path):
    session_file = tmp_path / "runtime" / "session.json"
    resolver = _Resolver("S-1")
    session = SessionContext(str(session_file), resolver, {"email": "a@b.c", "uid": "", "displayName": "Shop"})

    async def _run():
        return await asyncio.gather(session.seller_id(), session.seller_id())

    assert asyncio.run(_run()) == ["S-1", "S-1"]
    assert asyncio.run(session.seller_id()) == "S-1"
    assert resolver.calls == [{"email": "a@b.c", "displayName": "Shop"}]
    assert json.loads(session_file.read_text(encoding="utf-8"))["sellerId"] == "S-1"

    fresh = SessionContext(str(session_file), _Resolver("other"), {"email": "a@b.c"})
    assert asyncio.run(fresh.seller_id()) == "S-1"


def test_failed_resolution_yields_no_context(tmp_path: Path):
    session = SessionContext(str(tmp_path / "session.json"), _Resolver(TransportError("request_timeout")), {"email": "x"})
    assert asyncio.run(session.seller_id()) is None

    no_profile = SessionContext(str(tmp_path / "session.json"), _Resolver())
    assert asyncio.run(no_profile.seller_id()) is None


def test_clear_drops_cached_seller(tmp_path: Path):
    session_file = tmp_path / "session.json"
    session_file.write_text(json.dumps({"sellerId": "S-7", "token": "t"}), encoding="utf-8")
    session = SessionContext(str(session_file))
    assert asyncio.run(session.seller_id()) == "S-7"

    session.clear()

    assert asyncio.run(session.seller_id()) is None
    assert json.loads(session_file.read_text(encoding="utf-8")) == {"token": "t"}
