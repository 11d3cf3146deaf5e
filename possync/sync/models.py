from __future__ import annotations

import hashlib
import json
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Document keys owned by the sync engine; every other key is business payload.
CONTROL_KEYS = (
    "id",
    "remoteId",
    "isSynced",
    "isDeleted",
    "syncError",
    "syncAttempts",
    "lastSyncAttemptAt",
    "syncedAt",
    "syncFingerprint",
)
DIAGNOSTIC_KEYS = ("syncError", "syncAttempts", "lastSyncAttemptAt", "syncedAt", "syncFingerprint", "isSynced")
# syncError prefix for records held back until a referenced record syncs.
WAITING_FOR_DEPENDENCY = "waiting_for_dependency"


def _truthy_flag(value: Any) -> bool:
    return value is True or value == "true"


class Record(BaseModel):
    """One business entity plus the sync-control fields the engine owns."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    remote_id: Optional[str] = Field(default=None, alias="remoteId")
    is_synced: Optional[bool] = Field(default=None, alias="isSynced")
    is_deleted: bool = Field(default=False, alias="isDeleted")
    sync_error: Optional[str] = Field(default=None, alias="syncError")
    sync_attempts: int = Field(default=0, alias="syncAttempts")
    last_sync_attempt_at: Optional[str] = Field(default=None, alias="lastSyncAttemptAt")
    synced_at: Optional[str] = Field(default=None, alias="syncedAt")
    # Content fingerprint of the version whose failures syncAttempts counts.
    sync_fingerprint: Optional[str] = Field(default=None, alias="syncFingerprint")
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        if value is None or value == "":
            raise ValueError("record id is required")
        return str(value)

    @field_validator("remote_id", mode="before")
    @classmethod
    def _coerce_remote_id(cls, value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        return str(value)

    @field_validator("is_synced", mode="before")
    @classmethod
    def _coerce_synced(cls, value: Any) -> Optional[bool]:
        # Only an explicit true counts; false, null and junk all mean "pending".
        if _truthy_flag(value):
            return True
        if value is False:
            return False
        return None

    @field_validator("is_deleted", mode="before")
    @classmethod
    def _coerce_deleted(cls, value: Any) -> bool:
        return _truthy_flag(value)

    @field_validator("sync_attempts", mode="before")
    @classmethod
    def _coerce_attempts(cls, value: Any) -> int:
        try:
            return max(int(value or 0), 0)
        except (TypeError, ValueError):
            return 0

    @property
    def needs_sync(self) -> bool:
        return self.is_synced is not True

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Record":
        control: dict[str, Any] = {}
        payload: dict[str, Any] = {}
        for key, value in doc.items():
            if key in CONTROL_KEYS:
                control[key] = value
            else:
                payload[key] = value
        return cls.model_validate({**control, "payload": payload})

    def to_document(self) -> dict[str, Any]:
        control = self.model_dump(by_alias=True, exclude={"payload"}, exclude_none=True)
        return {**self.payload, **control}

    def to_wire(self) -> dict[str, Any]:
        """Outbound form: payload plus identity, without diagnostic fields."""
        wire = dict(self.payload)
        wire["id"] = self.id
        if self.remote_id:
            wire["remoteId"] = self.remote_id
        if self.is_deleted:
            wire["isDeleted"] = True
        return wire

    def content_fingerprint(self) -> str:
        blob = json.dumps(
            {"payload": self.payload, "isDeleted": self.is_deleted},
            sort_keys=True,
            ensure_ascii=False,
            default=str,
        )
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()


class ItemOutcome(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    remote_id: Optional[str] = Field(default=None, alias="remoteId")
    action: Literal["created", "updated", "deleted", "skipped"] = "updated"
    error: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("remote_id", mode="before")
    @classmethod
    def _coerce_remote_id(cls, value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        return str(value)

    @field_validator("action", mode="before")
    @classmethod
    def _coerce_action(cls, value: Any) -> str:
        if value in ("created", "updated", "deleted", "skipped"):
            return value
        return "updated"

    @classmethod
    def from_payload(cls, item: dict[str, Any]) -> "ItemOutcome":
        remote_id = item.get("remoteId") or item.get("_id")
        return cls.model_validate(
            {
                "id": item.get("id"),
                "remoteId": remote_id,
                "action": item.get("action"),
                "error": item.get("error") or item.get("message"),
            }
        )


class BatchResponse(BaseModel):
    success: bool = True
    succeeded: list[ItemOutcome] = Field(default_factory=list)
    failed: list[ItemOutcome] = Field(default_factory=list)
    plan_invalid: bool = False
    error: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "BatchResponse":
        # Some endpoints wrap the body in {"success": ..., "data": {...}}.
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        results = data.get("results") if isinstance(data.get("results"), dict) else {}
        succeeded = [
            ItemOutcome.from_payload(item)
            for item in results.get("success") or []
            if isinstance(item, dict) and item.get("id") is not None
        ]
        failed = [
            ItemOutcome.from_payload(item)
            for item in results.get("failed") or []
            if isinstance(item, dict) and item.get("id") is not None
        ]
        success_raw = payload.get("success", data.get("success", True))
        return cls(
            success=success_raw is not False,
            succeeded=succeeded,
            failed=failed,
            plan_invalid=payload.get("planInvalid") is True or data.get("planInvalid") is True,
            error=payload.get("error") or payload.get("message") or data.get("error"),
        )


class FailedItem(BaseModel):
    id: str
    error: str
    retry: bool = True


class EntityResult(BaseModel):
    synced: int = 0
    # Accepted by the backend but edited locally meanwhile; still pending.
    requeued: int = 0
    failed: int = 0
    deleted: int = 0
    deferred: int = 0
    skipped_pending: int = 0
    skipped_exhausted: int = 0
    failed_items: list[FailedItem] = Field(default_factory=list)
    error: Optional[str] = None


class GroupResult(BaseModel):
    endpoint: str
    submitted: int = 0
    synced: int = 0
    failed: int = 0
    requeued: int = 0
    per_type: dict[str, EntityResult] = Field(default_factory=dict)
    error: Optional[str] = None

    def tally(self) -> "GroupResult":
        self.synced = sum(r.synced for r in self.per_type.values())
        self.failed = sum(r.failed for r in self.per_type.values())
        self.requeued = sum(r.requeued for r in self.per_type.values())
        return self


class SweepSummary(BaseModel):
    success: bool = False
    total_synced: int = 0
    total_failed: int = 0
    total_requeued: int = 0
    per_entity_results: dict[str, EntityResult] = Field(default_factory=dict)
    groups: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    plan_invalid: bool = False
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class PullResult(BaseModel):
    entity_type: str
    endpoint: str
    updated: int = 0
    deleted: int = 0
    skipped_pending: int = 0
    error: Optional[str] = None


class PullSummary(BaseModel):
    success: bool = False
    results: dict[str, PullResult] = Field(default_factory=dict)
    error: Optional[str] = None
    plan_invalid: bool = False
