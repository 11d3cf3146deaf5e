from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from possync.sync.engine import SyncEngine
from possync.sync.entities import DEFAULT_SYNC_ORDER
from possync.sync.errors import PlanInvalidError, TransportError
from possync.sync.models import BatchResponse
from possync.sync.session import SessionContext
from possync.sync.store import MemoryRecordStore

PRODUCT_REMOTE_ID = "a" * 24


def accept_all(endpoint: str, items: list[dict]) -> dict:
    return {
        "success": True,
        "results": {
            "success": [
                {
                    "id": item["id"],
                    "remoteId": item.get("remoteId") or f"R-{item['id']}",
                    "action": "deleted" if item.get("isDeleted") else "created",
                }
                for item in items
            ],
            "failed": [],
        },
    }


def reject_all(error: str = "validation_failed") -> Callable[[str, list[dict]], dict]:
    def _respond(endpoint: str, items: list[dict]) -> dict:
        return {
            "success": True,
            "results": {"success": [], "failed": [{"id": item["id"], "error": error} for item in items]},
        }

    return _respond


class FakeTransport:
    """In-process backend: records every batch and answers through ``responder``."""

    def __init__(self, responder: Optional[Callable[[str, list[dict]], Any]] = None):
        self.responder = responder or accept_all
        self.batches: list[tuple[str, str, list[dict]]] = []
        self.changes: dict[str, dict] = {}
        self.fetches: list[tuple[str, str, Optional[str]]] = []
        self.online = True
        self.on_submit: Optional[Callable[[str, list[dict]], Any]] = None

    def endpoints(self) -> list[str]:
        return [endpoint for endpoint, _seller, _items in self.batches]

    async def submit_batch(self, endpoint: str, seller_id: str, items: list[dict]) -> BatchResponse:
        self.batches.append((endpoint, seller_id, [dict(item) for item in items]))
        await asyncio.sleep(0)
        if self.on_submit is not None:
            await self.on_submit(endpoint, items)
        payload = self.responder(endpoint, items)
        if isinstance(payload, Exception):
            raise payload
        if payload.get("planInvalid"):
            raise PlanInvalidError(payload.get("error") or "plan_invalid")
        response = BatchResponse.from_payload(payload)
        if not response.success:
            raise TransportError(response.error or "batch_rejected")
        return response

    async def fetch_changes(self, endpoint: str, seller_id: str, since: Optional[str] = None) -> dict:
        self.fetches.append((endpoint, seller_id, since))
        await asyncio.sleep(0)
        payload = self.changes.get(endpoint, {"success": True, "updated": [], "deleted": []})
        if isinstance(payload, Exception):
            raise payload
        return payload

    async def check_health(self) -> bool:
        return self.online


def memory_stores(names=DEFAULT_SYNC_ORDER) -> dict[str, MemoryRecordStore]:
    return {name: MemoryRecordStore() for name in names}


def make_engine(
    transport: Optional[FakeTransport] = None,
    stores: Optional[dict] = None,
    seller_id: str = "seller-1",
    **kwargs,
) -> SyncEngine:
    transport = transport or FakeTransport()
    stores = stores or memory_stores()
    session = SessionContext(seller_id=seller_id)
    kwargs.setdefault("is_online", lambda: True)
    kwargs.setdefault("clock", lambda: "2026-01-01T00:00:00+00:00")
    return SyncEngine(stores, transport, session, **kwargs)
