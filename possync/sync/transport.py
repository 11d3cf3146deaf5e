from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional

import requests

from possync.sync.errors import PlanInvalidError, TransportError
from possync.sync.models import BatchResponse

logger = logging.getLogger("transport")

BACKOFF_BASE_SEC = 1.0
BACKOFF_MULTIPLIER = 1.5
BACKOFF_MAX_SEC = 5.0


def backoff_delay(attempt: int) -> float:
    return min(BACKOFF_BASE_SEC * (BACKOFF_MULTIPLIER**attempt), BACKOFF_MAX_SEC)


def _is_plan_invalid(body: Any) -> bool:
    if not isinstance(body, dict):
        return False
    if body.get("planInvalid") is True:
        return True
    data = body.get("data")
    return isinstance(data, dict) and data.get("planInvalid") is True


def _error_text(body: dict[str, Any], default: str) -> str:
    for key in ("error", "message", "msg"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return default


class SyncTransport:
    """Blocking ``requests`` client for the backend sync API.

    Every public coroutine runs the request in a worker thread, so a slow
    backend never stalls the event loop beyond the configured timeout.
    """

    def __init__(
        self,
        base_url: str,
        timeout: int = 30,
        api_token: str = "",
        request_retries: int = 2,
        health_timeout: int = 5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_token = api_token or ""
        self.request_retries = max(int(request_retries), 0)
        self.health_timeout = health_timeout
        self.sleep = sleep

    def _headers(self, seller_id: Optional[str] = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if seller_id:
            headers["x-seller-id"] = seller_id
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        seller_id: Optional[str] = None,
        json_body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[int] = None,
        retries: Optional[int] = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        max_retries = self.request_retries if retries is None else retries
        attempt = 0
        while True:
            try:
                res = requests.request(
                    method,
                    url,
                    headers=self._headers(seller_id),
                    json=json_body,
                    params=params,
                    timeout=timeout or self.timeout,
                )
            except requests.Timeout as exc:
                error = TransportError("request_timeout")
                cause: Optional[Exception] = exc
            except requests.RequestException as exc:
                error = TransportError(f"request_failed: {exc}")
                cause = exc
            else:
                try:
                    body = res.json()
                except ValueError:
                    body = None

                if _is_plan_invalid(body):
                    raise PlanInvalidError(_error_text(body, "plan_invalid"))
                if res.status_code >= 500:
                    error = TransportError(f"http_{res.status_code}")
                    cause = None
                elif res.status_code >= 400:
                    text = _error_text(body, "") if isinstance(body, dict) else ""
                    raise TransportError(f"http_{res.status_code}" + (f": {text}" if text else ""))
                elif not isinstance(body, dict):
                    raise TransportError("invalid_response")
                else:
                    return body

            if attempt >= max_retries:
                if cause is not None:
                    raise error from cause
                raise error
            delay = backoff_delay(attempt)
            logger.warning(
                "request_retry method=%s path=%s attempt=%s delay=%.1f error=%s",
                method,
                path,
                attempt + 1,
                delay,
                error,
            )
            self.sleep(delay)
            attempt += 1

    def _submit_batch(self, endpoint: str, seller_id: str, items: list[dict[str, Any]]) -> BatchResponse:
        body = self._request(
            "POST",
            f"/sync/{endpoint}",
            seller_id=seller_id,
            json_body={"sellerId": seller_id, "items": items},
        )
        response = BatchResponse.from_payload(body)
        if not response.success:
            raise TransportError(response.error or "batch_rejected")
        return response

    def _fetch_changes(self, endpoint: str, seller_id: str, since: Optional[str]) -> dict[str, Any]:
        params = {"since": since} if since else None
        body = self._request("GET", f"/sync/{endpoint}", seller_id=seller_id, params=params)
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        if body.get("success") is False or data.get("success") is False:
            raise TransportError(_error_text(body, "pull_rejected"))
        return data

    def _resolve_seller(self, profile: dict[str, Any]) -> Optional[str]:
        body = self._request("POST", "/auth/seller", json_body=profile)
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        seller = data.get("seller") if isinstance(data.get("seller"), dict) else {}
        seller_id = seller.get("_id") or seller.get("id") or data.get("sellerId")
        return str(seller_id) if seller_id else None

    def _check_health(self) -> bool:
        try:
            self._request("GET", "/health", timeout=self.health_timeout, retries=0)
        except (TransportError, PlanInvalidError) as exc:
            logger.debug("health_check_failed error=%s", exc)
            return False
        return True

    async def submit_batch(self, endpoint: str, seller_id: str, items: list[dict[str, Any]]) -> BatchResponse:
        return await asyncio.to_thread(self._submit_batch, endpoint, seller_id, items)

    async def fetch_changes(self, endpoint: str, seller_id: str, since: Optional[str] = None) -> dict[str, Any]:
        return await asyncio.to_thread(self._fetch_changes, endpoint, seller_id, since)

    async def resolve_seller(self, profile: dict[str, Any]) -> Optional[str]:
        return await asyncio.to_thread(self._resolve_seller, profile)

    async def check_health(self) -> bool:
        return await asyncio.to_thread(self._check_health)
