"""
Read-only adapter over the legacy operations (MIS) database.

One item key -> one ItemSnapshot: descriptive fields plus a period-keyed map of
Delivery facts folded from the item's order/cargo rows.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError

from app.backoffice.constants import MIS_ORDER_STATUS_MAP
from app.backoffice.errors import NotFoundError, RowParseError, TransientFetchError, ValidationError
from app.backoffice.modules.scheduled_lists.periods import bucket_periods, normalize_shipment_id, period_key_for

logger = logging.getLogger(__name__)


ITEM_SQL = text(
    """
    SELECT
      i.id AS item_id,
      i.item_name AS item_name,
      i.ItemID_DE AS item_id_de,
      i.photo AS photo,
      i.FOQ AS foq,
      os.cargo_id AS cargo_id,
      os.status AS order_status,
      oi.qty AS quantity,
      c.cargo_no AS cargo_no,
      c.pickup_date AS pickup_date,
      c.dep_date AS dep_date,
      c.cargo_status AS cargo_status,
      c.shipped_at AS shipped_at,
      c.eta AS eta,
      c.remark AS remark,
      ct.cargo_type AS cargo_type,
      wi.item_no_de AS item_no_de,
      wi.item_name_de AS item_name_de
    FROM items i
    LEFT JOIN order_items oi ON i.ItemID_DE = oi.ItemID_DE
    LEFT JOIN order_statuses os ON oi.master_id = os.master_id AND oi.ItemID_DE = os.ItemID_DE
    LEFT JOIN cargos c ON os.cargo_id = c.id
    LEFT JOIN cargo_types ct ON c.cargo_type_id = ct.id
    LEFT JOIN warehouse_items wi ON i.ItemID_DE = wi.ItemID_DE
    WHERE i.id = :item_id
    ORDER BY os.id
    """
)

SEARCH_SQL = text(
    """
    SELECT id, item_name, ItemID_DE AS item_id_de, photo
    FROM items
    WHERE (item_name LIKE :pattern OR ItemID_DE = :exact)
      AND photo IS NOT NULL
      AND photo != ''
    ORDER BY item_name
    LIMIT :limit
    """
)


def json_number(value: Decimal | None) -> int | float | None:
    if value is None:
        return None
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class Delivery:
    period: str
    quantity: Decimal = Decimal("0")
    status: str | None = None
    delivered_at: datetime | date | None = None
    cargo_numbers: list[str] = field(default_factory=list)
    remark: str | None = None
    shipped_at: date | datetime | None = None
    eta: date | datetime | None = None
    cargo_type: str | None = None
    cargo_status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form stored in ListItem.deliveries."""
        return {
            "period": self.period,
            "quantity": json_number(self.quantity),
            "status": self.status,
            "delivered_at": _iso(self.delivered_at),
            "cargo_numbers": list(self.cargo_numbers),
            "remark": self.remark,
            "shipped_at": _iso(self.shipped_at),
            "eta": _iso(self.eta),
            "cargo_type": self.cargo_type,
            "cargo_status": self.cargo_status,
        }


@dataclass
class ItemSnapshot:
    item_key: str
    article_name: str | None
    article_number: str | None
    item_no_de: str | None
    image_url: str | None
    default_quantity: Decimal | None = None
    deliveries: dict[str, Delivery] = field(default_factory=dict)
    unassigned_quantity: Decimal = Decimal("0")

    @property
    def total_quantity(self) -> Decimal:
        return sum((d.quantity for d in self.deliveries.values()), Decimal("0"))


@dataclass(frozen=True)
class NormalizedRow:
    item_id: str
    article_name: str | None
    article_number: str | None
    item_no_de: str | None
    item_name_de: str | None
    image_url: str | None
    foq: Decimal | None
    cargo_id: int | None
    cargo_no: str | None
    quantity: Decimal
    pickup_date: date | None
    dep_date: date | None
    order_status: str | None
    cargo_status: str | None
    shipped_at: date | None
    eta: date | None
    remark: str | None
    cargo_type: str | None


def _opt_text(raw: Mapping[str, Any], key: str) -> str | None:
    v = raw.get(key)
    if v is None:
        return None
    if isinstance(v, (bytes, bytearray)):
        v = v.decode("utf-8", errors="replace")
    s = str(v).strip()
    return s or None


def _opt_decimal(raw: Mapping[str, Any], key: str) -> Decimal | None:
    v = raw.get(key)
    if v is None or v == "":
        return None
    if isinstance(v, bool):
        raise RowParseError(f"{key}: expected a number, got {v!r}")
    try:
        d = Decimal(str(v).strip())
    except InvalidOperation as e:
        raise RowParseError(f"{key}: expected a number, got {v!r}") from e
    if not d.is_finite():
        raise RowParseError(f"{key}: expected a finite number, got {v!r}")
    return d


def _opt_int(raw: Mapping[str, Any], key: str) -> int | None:
    v = raw.get(key)
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError) as e:
        raise RowParseError(f"{key}: expected an integer id, got {v!r}") from e


def _opt_date(raw: Mapping[str, Any], key: str) -> date | None:
    v = raw.get(key)
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    if isinstance(v, str):
        s = v.strip()
        # MySQL zero dates come through as strings on some drivers
        if s.startswith("0000-00-00"):
            return None
        try:
            return datetime.fromisoformat(s.replace("Z", "+00:00")).date()
        except ValueError:
            pass
        try:
            return date.fromisoformat(s[:10])
        except ValueError as e:
            raise RowParseError(f"{key}: unparseable date {v!r}") from e
    raise RowParseError(f"{key}: unsupported date value {v!r}")


def parse_row(raw: Mapping[str, Any]) -> NormalizedRow:
    """Strict mapping of one joined MIS row. Raises RowParseError."""
    item_id = raw.get("item_id")
    if item_id is None or str(item_id).strip() == "":
        raise RowParseError("item_id is missing")
    return NormalizedRow(
        item_id=str(item_id).strip(),
        article_name=_opt_text(raw, "item_name"),
        article_number=_opt_text(raw, "item_id_de"),
        item_no_de=_opt_text(raw, "item_no_de"),
        item_name_de=_opt_text(raw, "item_name_de"),
        image_url=_opt_text(raw, "photo"),
        foq=_opt_decimal(raw, "foq"),
        cargo_id=_opt_int(raw, "cargo_id"),
        cargo_no=normalize_shipment_id(raw.get("cargo_no")),
        quantity=_opt_decimal(raw, "quantity") or Decimal("0"),
        pickup_date=_opt_date(raw, "pickup_date"),
        dep_date=_opt_date(raw, "dep_date"),
        order_status=_opt_text(raw, "order_status"),
        cargo_status=_opt_text(raw, "cargo_status"),
        shipped_at=_opt_date(raw, "shipped_at"),
        eta=_opt_date(raw, "eta"),
        remark=_opt_text(raw, "remark"),
        cargo_type=_opt_text(raw, "cargo_type"),
    )


def delivery_status_for(order_status: str | None) -> str | None:
    """MIS order status -> delivery status; None when MIS has no opinion."""
    if not order_status:
        return None
    return MIS_ORDER_STATUS_MAP.get(order_status.strip().lower())


def _observations(rows: Iterable[NormalizedRow]) -> list[tuple[str, NormalizedRow, date]]:
    """One (period, row, anchor) per present pickup/departure date on rows with a cargo."""
    out: list[tuple[str, NormalizedRow, date]] = []
    for row in rows:
        if row.cargo_id is None:
            continue
        for anchor in (row.pickup_date, row.dep_date):
            if anchor is not None:
                out.append((period_key_for(anchor), row, anchor))
    return out


def fold_deliveries(rows: list[NormalizedRow]) -> tuple[dict[str, Delivery], Decimal]:
    """
    Returns ({period: Delivery} in chronological order, unassigned_quantity).

    Quantity is summed once per shipment per period; annotation fields take the
    newest non-empty value.
    """
    observations = _observations(rows)
    periods, shipments = bucket_periods((period, row.cargo_no) for period, row, _ in observations)

    folded: dict[str, Delivery] = {p: Delivery(period=p, cargo_numbers=sorted(shipments[p])) for p in periods}
    seen: dict[str, set[str]] = {p: set() for p in periods}

    for period, row, anchor in observations:
        d = folded[period]
        # Rows without a cargo number still belong to one physical cargo (cargo_id).
        shipment = row.cargo_no or f"cargo:{row.cargo_id}"
        if shipment not in seen[period]:
            seen[period].add(shipment)
            d.quantity += row.quantity
        if d.delivered_at is None:
            d.delivered_at = anchor

        status = delivery_status_for(row.order_status)
        if status is not None:
            d.status = status
        if row.cargo_status:
            d.cargo_status = row.cargo_status
        if row.remark:
            d.remark = row.remark
        if row.shipped_at:
            d.shipped_at = row.shipped_at
        if row.eta:
            d.eta = row.eta
        if row.cargo_type:
            d.cargo_type = row.cargo_type

    unassigned = sum((r.quantity for r in rows if r.cargo_id is None), Decimal("0"))
    return folded, unassigned


def build_snapshot(item_key: str, rows: list[NormalizedRow]) -> ItemSnapshot:
    if not rows:
        raise NotFoundError("Item not found in MIS database")
    head = rows[0]

    def first(attr: str) -> Any:
        for r in rows:
            v = getattr(r, attr)
            if v is not None:
                return v
        return None

    deliveries, unassigned = fold_deliveries(rows)
    return ItemSnapshot(
        item_key=item_key,
        article_name=head.article_name or first("item_name_de"),
        article_number=head.article_number,
        item_no_de=first("item_no_de"),
        image_url=head.image_url,
        default_quantity=head.foq,
        deliveries=deliveries,
        unassigned_quantity=unassigned,
    )


def normalize_item_key(item_key: Any) -> int:
    try:
        key = int(str(item_key).strip())
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid MIS item key: {item_key!r}") from e
    if key <= 0:
        raise ValidationError(f"Invalid MIS item key: {item_key!r}")
    return key


class MisSource:
    """
    Pooled, read-only access to MIS. A connection is checked out per call and
    always returned to the pool, never held across items.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        timeout_seconds: float = 20.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    def _query(self, stmt, params: dict[str, Any]) -> list[Mapping[str, Any]]:
        try:
            with self.engine.connect() as conn:
                return list(conn.execute(stmt, params).mappings().all())
        except (OperationalError, InterfaceError, PoolTimeoutError) as e:
            logger.warning("MIS: query failed: %s", e)
            raise TransientFetchError(f"MIS unavailable: {e.__class__.__name__}") from e

    def fetch(self, item_key: Any) -> ItemSnapshot:
        key = normalize_item_key(item_key)
        started = self._clock()
        raw_rows = self._query(ITEM_SQL, {"item_id": key})
        elapsed = self._clock() - started
        if elapsed > self.timeout_seconds:
            # Late result is discarded, never merged.
            raise TransientFetchError(f"MIS fetch for item {key} exceeded {self.timeout_seconds:g}s ({elapsed:.1f}s)")
        if not raw_rows:
            raise NotFoundError("Item not found in MIS database")
        rows = [parse_row(r) for r in raw_rows]
        logger.debug("MIS: item=%s rows=%s elapsed=%.3fs", key, len(rows), elapsed)
        return build_snapshot(str(key), rows)

    def search_items(self, q: str, *, limit: int = 10) -> list[dict[str, Any]]:
        q = (q or "").strip()
        if not q:
            return []
        raw_rows = self._query(SEARCH_SQL, {"pattern": f"%{q}%", "exact": q, "limit": int(limit)})
        return [
            {
                "item_key": str(r["id"]),
                "article_name": _opt_text(r, "item_name"),
                "article_number": _opt_text(r, "item_id_de"),
                "image_url": _opt_text(r, "photo"),
            }
            for r in raw_rows
        ]
