from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional, Protocol

from possync.sync.errors import SyncError

logger = logging.getLogger("session")


class SellerResolver(Protocol):
    async def resolve_seller(self, profile: dict[str, Any]) -> Optional[str]: ...


class SessionContext:
    """Seller id resolved once and cached in memory and in a JSON session file."""

    def __init__(
        self,
        session_file: str = "",
        resolver: Optional[SellerResolver] = None,
        profile: Optional[dict[str, Any]] = None,
        seller_id: str = "",
    ):
        self.session_file = session_file or ""
        self.resolver = resolver
        self.profile = {k: v for k, v in (profile or {}).items() if v}
        self._seller_id: Optional[str] = seller_id or None
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, Any] | None:
        if not self.session_file:
            return None
        p = Path(self.session_file)
        if not p.exists():
            return None
        try:
            payload = json.loads(p.read_text(encoding="utf-8"))
        except ValueError:
            logger.warning("session_file_invalid path=%s", p)
            return None
        return payload if isinstance(payload, dict) else None

    def _save(self, data: dict[str, Any]) -> None:
        if not self.session_file:
            return
        p = Path(self.session_file)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")

    def cached_seller_id(self) -> Optional[str]:
        if self._seller_id:
            return self._seller_id
        data = self._load() or {}
        user = data.get("currentUser") if isinstance(data.get("currentUser"), dict) else {}
        seller_id = data.get("sellerId") or user.get("sellerId")
        if seller_id:
            self._seller_id = str(seller_id)
        return self._seller_id

    async def seller_id(self) -> Optional[str]:
        cached = self.cached_seller_id()
        if cached:
            return cached
        if self.resolver is None or not self.profile:
            return None

        async with self._lock:
            # Another caller may have resolved it while we waited.
            if self._seller_id:
                return self._seller_id
            try:
                resolved = await self.resolver.resolve_seller(self.profile)
            except SyncError as exc:
                logger.warning("seller_resolve_failed error=%s", exc)
                return None
            if not resolved:
                logger.warning("seller_resolve_empty email=%s", self.profile.get("email", ""))
                return None

            self._seller_id = resolved
            data = self._load() or {}
            data["sellerId"] = resolved
            self._save(data)
            logger.info("seller_resolved seller_id=%s", resolved)
            return resolved

    def clear(self):
        self._seller_id = None
        data = self._load()
        if data and "sellerId" in data:
            data.pop("sellerId")
            self._save(data)
