from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Iterable, Iterator, Optional

from possync.sync.errors import ConfigError

DEFAULT_REMOTE_ID_PATTERN = r"^[0-9a-fA-F]{24}$"


@dataclass(frozen=True)
class Reference:
    """A foreign key inside a record payload.

    ``path`` is dotted; a ``[]`` suffix walks every element of a list, so
    ``items[].productId`` addresses the product of every order line.
    """

    path: str
    target: str

    def segments(self) -> list[tuple[str, bool]]:
        out = []
        for part in self.path.split("."):
            if part.endswith("[]"):
                out.append((part[:-2], True))
            else:
                out.append((part, False))
        return out


def iter_reference_slots(payload: dict[str, Any], ref: Reference) -> Iterator[tuple[dict, str]]:
    """Yield ``(container, key)`` for every present slot the reference addresses."""
    segments = ref.segments()
    containers: list[Any] = [payload]
    for name, is_list in segments[:-1]:
        nxt: list[Any] = []
        for container in containers:
            if not isinstance(container, dict):
                continue
            value = container.get(name)
            if is_list:
                if isinstance(value, list):
                    nxt.extend(v for v in value if isinstance(v, dict))
            elif isinstance(value, dict):
                nxt.append(value)
        containers = nxt

    last_name, last_is_list = segments[-1]
    if last_is_list:
        raise ConfigError(f"reference path must end on a field: {ref.path}")
    for container in containers:
        if isinstance(container, dict) and last_name in container:
            yield container, last_name


def _round2(value: Any) -> str:
    try:
        number = Decimal(str(value if isinstance(value, (int, float)) else float(value or 0)))
    except (TypeError, ValueError, ArithmeticError):
        number = Decimal(0)
    return format(number.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP).normalize(), "f")


def _as_number(value: Any) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    try:
        return str(float(value))
    except (TypeError, ValueError):
        return "0"


def order_operation_key(payload: dict[str, Any]) -> str:
    """Content hash of an order, shared with the checkout path that submits orders directly."""
    lines = []
    for item in payload.get("items") or []:
        if not isinstance(item, dict):
            continue
        lines.append(
            {
                "name": str(item.get("name") or "").strip(),
                "quantity": _as_number(item.get("quantity")),
                "sellingPrice": _round2(item.get("sellingPrice")),
                "costPrice": _round2(item.get("costPrice")),
            }
        )
    lines.sort(key=lambda line: line["name"])
    items_hash = json.dumps(lines, separators=(",", ":"), ensure_ascii=False)
    seller = payload.get("sellerId") or ""
    customer = payload.get("customerId") or "null"
    return f"{seller}_{customer}_{_round2(payload.get('totalAmount'))}_{items_hash}"


@dataclass(frozen=True)
class EntityType:
    name: str
    endpoint: str
    # field -> placeholder prefix; the field is removed when its value starts with it
    strip_fields: dict[str, str] = field(default_factory=dict)
    # fields removed unless they already hold a remote identity
    invalid_reference_fields: tuple[str, ...] = ()
    references: tuple[Reference, ...] = ()
    operation_key: Optional[Callable[[dict[str, Any]], str]] = None

    def clean_payload(self, payload: dict[str, Any], is_remote_id: Callable[[Any], bool]) -> dict[str, Any]:
        cleaned = dict(payload)
        for name, prefix in self.strip_fields.items():
            value = cleaned.get(name)
            if isinstance(value, str) and value.startswith(prefix):
                cleaned.pop(name)
        for name in self.invalid_reference_fields:
            value = cleaned.get(name)
            if isinstance(value, str) and not is_remote_id(value):
                cleaned.pop(name)
        return cleaned


DEFAULT_ENTITY_TYPES: dict[str, EntityType] = {
    et.name: et
    for et in (
        EntityType("categories", "categories"),
        EntityType("products", "products", invalid_reference_fields=("category",)),
        EntityType("customers", "customers"),
        EntityType(
            "orders",
            "orders",
            references=(Reference("items[].productId", "products"),),
            operation_key=order_operation_key,
        ),
        EntityType("transactions", "transactions"),
        EntityType("refunds", "refunds"),
        EntityType("productBatches", "product-batches"),
        EntityType("purchaseOrders", "vendor-orders", strip_fields={"_id": "PO_"}),
        EntityType("settings", "settings"),
    )
}

DEFAULT_SYNC_ORDER: tuple[str, ...] = (
    "categories",
    "products",
    "customers",
    "orders",
    "transactions",
    "refunds",
    "productBatches",
    "purchaseOrders",
    "settings",
)


def build_entity_types(
    order: Iterable[str] | None = None,
    endpoint_overrides: dict[str, str] | None = None,
) -> list[EntityType]:
    """Resolve the ordered entity type list from config.

    Unknown names are accepted when an endpoint override declares them.
    """
    overrides = dict(endpoint_overrides or {})
    names = list(order or DEFAULT_SYNC_ORDER)
    for name in overrides:
        if name not in names:
            names.append(name)

    seen: set[str] = set()
    out: list[EntityType] = []
    for name in names:
        if name in seen:
            raise ConfigError(f"duplicate_entity_type name={name}")
        seen.add(name)
        base = DEFAULT_ENTITY_TYPES.get(name)
        if base is None:
            if name not in overrides:
                raise ConfigError(f"unknown_entity_type name={name}")
            base = EntityType(name, overrides[name])
        elif name in overrides:
            base = replace(base, endpoint=overrides[name])
        out.append(base)

    known = {et.name for et in out}
    for et in out:
        for ref in et.references:
            if ref.target not in known:
                raise ConfigError(f"unknown_reference_target entity={et.name} target={ref.target}")

    # Endpoint merging can move a group; targets must still finish a whole batch earlier.
    position = {name: idx for idx, group in enumerate(group_by_endpoint(out)) for name in group.names}
    for et in out:
        for ref in et.references:
            if position[ref.target] >= position[et.name]:
                raise ConfigError(f"reference_target_not_synced_first entity={et.name} target={ref.target}")
    return out


@dataclass
class EndpointGroup:
    endpoint: str
    entity_types: list[EntityType] = field(default_factory=list)

    @property
    def names(self) -> list[str]:
        return [et.name for et in self.entity_types]


def group_by_endpoint(entity_types: list[EntityType]) -> list[EndpointGroup]:
    """Merge entity types sharing an endpoint into one group.

    A group sits at the position of its last member, so every member's
    dependencies earlier in the order are synced before the shared batch.
    """
    last_index: dict[str, int] = {}
    for idx, et in enumerate(entity_types):
        last_index[et.endpoint] = idx

    groups: dict[str, EndpointGroup] = {}
    for et in entity_types:
        groups.setdefault(et.endpoint, EndpointGroup(et.endpoint)).entity_types.append(et)
    return sorted(groups.values(), key=lambda g: last_index[g.endpoint])


def dependency_targets(entity_types: list[EntityType]) -> set[str]:
    return {ref.target for et in entity_types for ref in et.references}


def remote_id_matcher(pattern: str = DEFAULT_REMOTE_ID_PATTERN) -> Callable[[Any], bool]:
    compiled = re.compile(pattern)

    def _match(value: Any) -> bool:
        return isinstance(value, str) and bool(compiled.match(value))

    return _match
