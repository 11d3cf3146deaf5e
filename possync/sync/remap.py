from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Optional

from possync.sync.entities import EntityType, iter_reference_slots
from possync.sync.models import WAITING_FOR_DEPENDENCY
from possync.sync.store import RecordStore
from possync.sync.utils import now_iso

logger = logging.getLogger("sync")

UnresolvedPolicy = Literal["defer", "null"]


@dataclass
class _TargetIndex:
    mapping: dict[str, str] = field(default_factory=dict)
    local_ids: set[str] = field(default_factory=set)
    remote_ids: set[str] = field(default_factory=set)


class IdentityRemapper:
    """Rewrites local foreign keys to backend ids before dependents are sent.

    Mappings are built from synced target records and cached for the
    duration of one sweep; ``reset`` starts a new sweep.
    """

    def __init__(
        self,
        stores: dict[str, RecordStore],
        entity_types: list[EntityType],
        is_remote_id: Callable[[Any], bool],
        policy: UnresolvedPolicy = "defer",
        clock: Callable[[], str] = now_iso,
    ):
        self.stores = stores
        self.clock = clock
        self.entity_types = {et.name: et for et in entity_types}
        self.is_remote_id = is_remote_id
        self.policy = policy
        self._index: dict[str, _TargetIndex] = {}

    def reset(self):
        self._index.clear()

    async def build_mapping(self, entity_type: str) -> dict[str, str]:
        index = _TargetIndex()
        for record in await self.stores[entity_type].list_all():
            index.local_ids.add(record.id)
            if record.remote_id:
                index.remote_ids.add(record.remote_id)
                if record.is_synced is True:
                    index.mapping[record.id] = record.remote_id
        self._index[entity_type] = index
        logger.debug("mapping_built entity=%s size=%s", entity_type, len(index.mapping))
        return dict(index.mapping)

    async def _target_index(self, target: str) -> _TargetIndex:
        if target not in self._index:
            await self.build_mapping(target)
        return self._index[target]

    async def apply_mapping(
        self,
        entity_type: str,
        mappings: Optional[dict[str, dict[str, str]]] = None,
    ) -> set[str]:
        """Rewrite references of pending ``entity_type`` records.

        ``mappings`` (target name -> local id -> remote id) overrides the
        cached mapping for a target. Returns the ids of records held back
        because a reference points at a target that is not synced yet.
        """
        et = self.entity_types.get(entity_type)
        if et is None or not et.references:
            return set()

        indexes: dict[str, _TargetIndex] = {}
        for ref in et.references:
            index = await self._target_index(ref.target)
            if mappings and ref.target in mappings:
                index = _TargetIndex(
                    mapping=dict(mappings[ref.target]),
                    local_ids=index.local_ids | set(mappings[ref.target]),
                    remote_ids=index.remote_ids | set(mappings[ref.target].values()),
                )
            indexes[ref.target] = index

        store = self.stores[entity_type]
        deferred: set[str] = set()
        rewritten = nulled = 0
        for record in await store.list_all():
            if not record.needs_sync or record.is_deleted:
                continue

            payload = copy.deepcopy(record.payload)
            changed = False
            waiting: list[str] = []
            for ref in et.references:
                index = indexes[ref.target]
                for container, key in list(iter_reference_slots(payload, ref)):
                    value = container[key]
                    if value is None or value == "":
                        continue
                    if self.is_remote_id(value) or value in index.remote_ids:
                        continue
                    if value in index.mapping:
                        container[key] = index.mapping[value]
                        changed = True
                        rewritten += 1
                    elif self.policy == "defer" and value in index.local_ids:
                        waiting.append(f"{ref.target}:{value}")
                    else:
                        logger.warning(
                            "reference_nulled entity=%s id=%s field=%s value=%s",
                            entity_type,
                            record.id,
                            ref.path,
                            value,
                        )
                        container[key] = None
                        changed = True
                        nulled += 1

            if waiting:
                # Payload stays as written; only the diagnostics say why it is not sent.
                deferred.add(record.id)
                record.sync_error = f"{WAITING_FOR_DEPENDENCY} " + ",".join(sorted(set(waiting)))
                record.last_sync_attempt_at = self.clock()
                await store.update(record)
                continue
            if changed:
                record.payload = payload
                await store.update(record)

        if rewritten or nulled or deferred:
            logger.info(
                "mapping_applied entity=%s rewritten=%s nulled=%s deferred=%s",
                entity_type,
                rewritten,
                nulled,
                len(deferred),
            )
        return deferred
