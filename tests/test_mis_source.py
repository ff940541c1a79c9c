"""Tests for the MIS adapter: strict row parsing, delivery folding, and fetch against a sqlite stand-in."""
import time
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, text

from app.backoffice.db import create_mis_engine, mis_connect_args
from app.backoffice.errors import NotFoundError, RowParseError, TransientFetchError, ValidationError
from app.backoffice.modules.scheduled_lists.mis_source import (
    MisSource,
    delivery_status_for,
    fold_deliveries,
    parse_row,
)


def _row(**overrides):
    raw = {
        "item_id": 1,
        "item_name": "Widget",
        "item_id_de": "1001",
        "photo": "w.jpg",
        "foq": 50,
        "cargo_id": 100,
        "cargo_no": "C100",
        "quantity": 5,
        "pickup_date": "2024-03-02",
        "dep_date": None,
        "order_status": None,
    }
    raw.update(overrides)
    return parse_row(raw)


MIS_DDL = [
    "CREATE TABLE items (id INTEGER PRIMARY KEY, item_name TEXT, ItemID_DE TEXT, photo TEXT, FOQ NUMERIC)",
    "CREATE TABLE order_items (id INTEGER PRIMARY KEY, master_id INTEGER, ItemID_DE TEXT, qty NUMERIC)",
    "CREATE TABLE order_statuses (id INTEGER PRIMARY KEY, master_id INTEGER, ItemID_DE TEXT, cargo_id INTEGER, status TEXT)",
    "CREATE TABLE cargos (id INTEGER PRIMARY KEY, cargo_no TEXT, pickup_date DATE, dep_date DATE, cargo_status TEXT, "
    "shipped_at DATE, eta DATE, remark TEXT, cargo_type_id INTEGER)",
    "CREATE TABLE cargo_types (id INTEGER PRIMARY KEY, cargo_type TEXT)",
    "CREATE TABLE warehouse_items (id INTEGER PRIMARY KEY, ItemID_DE TEXT, item_no_de TEXT, item_name_de TEXT)",
]

MIS_SEED = [
    "INSERT INTO items VALUES (1, 'Widget', '1001', 'w.jpg', 50)",
    "INSERT INTO items VALUES (2, 'Gadget', '1002', '', NULL)",
    "INSERT INTO order_items VALUES (1, 10, '1001', 5)",
    "INSERT INTO order_items VALUES (2, 11, '1001', 7)",
    "INSERT INTO order_items VALUES (3, 12, '1001', 3)",
    "INSERT INTO order_statuses VALUES (1, 10, '1001', 100, 'Invoiced')",
    "INSERT INTO order_statuses VALUES (2, 11, '1001', 101, 'Shipped')",
    "INSERT INTO order_statuses VALUES (3, 12, '1001', NULL, 'Open')",
    "INSERT INTO cargos VALUES (100, 'C100', '2024-03-02', '2024-03-20', 'arrived', '2024-03-20', NULL, 'dock 4', 1)",
    "INSERT INTO cargos VALUES (101, 'C101', '2024-03-15', '2024-04-02', 'in transit', NULL, '2024-04-20', NULL, 2)",
    "INSERT INTO cargo_types VALUES (1, 'Sea')",
    "INSERT INTO cargo_types VALUES (2, 'Air')",
    "INSERT INTO warehouse_items VALUES (1, '1001', 'DE-1001', 'Widget DE')",
]


@pytest.fixture()
def mis_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path/'mis.db'}", future=True)
    with engine.begin() as conn:
        for stmt in MIS_DDL + MIS_SEED:
            conn.execute(text(stmt))
    yield engine
    engine.dispose()


class TestParseRow:
    def test_normalizes_types(self):
        r = _row(quantity="7.5", cargo_no="  C9 ", dep_date="2024-04-01 00:00:00")
        assert r.item_id == "1"
        assert r.quantity == Decimal("7.5")
        assert r.cargo_no == "C9"
        assert r.dep_date.isoformat() == "2024-04-01"

    def test_missing_item_id_fails(self):
        with pytest.raises(RowParseError):
            parse_row({"item_name": "x"})

    @pytest.mark.parametrize("field,value", [("quantity", "lots"), ("pickup_date", "03/05/2024"), ("cargo_id", "abc")])
    def test_malformed_values_fail_loudly(self, field, value):
        with pytest.raises(RowParseError):
            _row(**{field: value})

    def test_blank_quantity_is_zero(self):
        assert _row(quantity=None).quantity == Decimal("0")


class TestFoldDeliveries:
    def test_same_shipment_counted_once(self):
        rows = [_row(quantity=5), _row(quantity=5)]
        deliveries, _ = fold_deliveries(rows)
        assert deliveries["2024-03"].quantity == Decimal("5")
        assert deliveries["2024-03"].cargo_numbers == ["C100"]

    def test_distinct_shipments_sum(self):
        rows = [_row(quantity=5), _row(cargo_id=101, cargo_no="C101", quantity=5)]
        deliveries, _ = fold_deliveries(rows)
        assert deliveries["2024-03"].quantity == Decimal("10")
        assert deliveries["2024-03"].cargo_numbers == ["C100", "C101"]

    def test_pickup_and_departure_in_same_period_not_double_counted(self):
        deliveries, _ = fold_deliveries([_row(quantity=4, pickup_date="2024-03-01", dep_date="2024-03-28")])
        assert deliveries["2024-03"].quantity == Decimal("4")

    def test_pickup_and_departure_in_different_periods(self):
        deliveries, _ = fold_deliveries([_row(quantity=4, pickup_date="2024-03-30", dep_date="2024-04-02")])
        assert list(deliveries) == ["2024-03", "2024-04"]
        assert deliveries["2024-04"].quantity == Decimal("4")

    def test_annotations_last_non_empty_wins(self):
        rows = [
            _row(order_status="Invoiced", remark="first"),
            _row(order_status=None, remark="second"),
            _row(order_status=None, remark=None),
        ]
        d, _ = fold_deliveries(rows)
        assert d["2024-03"].status == "delivered"
        assert d["2024-03"].remark == "second"
        assert d["2024-03"].quantity == Decimal("5")

    def test_rows_without_cargo_are_unassigned(self):
        rows = [_row(), _row(cargo_id=None, cargo_no=None, quantity=3, pickup_date=None)]
        deliveries, unassigned = fold_deliveries(rows)
        assert unassigned == Decimal("3")
        assert deliveries["2024-03"].quantity == Decimal("5")

    def test_cargo_without_number_deduped_by_cargo_id(self):
        rows = [_row(cargo_no=None, quantity=2), _row(cargo_no=None, quantity=2)]
        deliveries, _ = fold_deliveries(rows)
        assert deliveries["2024-03"].quantity == Decimal("2")
        assert deliveries["2024-03"].cargo_numbers == []

    def test_status_mapping(self):
        assert delivery_status_for("Invoiced") == "delivered"
        assert delivery_status_for("cancelled") == "cancelled"
        assert delivery_status_for(None) is None
        assert delivery_status_for("Something else") is None


class TestMisSource:
    def test_fetch_builds_snapshot(self, mis_engine):
        snap = MisSource(mis_engine).fetch("1")
        assert snap.item_key == "1"
        assert snap.article_name == "Widget"
        assert snap.article_number == "1001"
        assert snap.item_no_de == "DE-1001"
        assert snap.image_url == "w.jpg"
        assert snap.default_quantity == Decimal("50")
        assert list(snap.deliveries) == ["2024-03", "2024-04"]

        march = snap.deliveries["2024-03"]
        assert march.quantity == Decimal("12")
        assert march.cargo_numbers == ["C100", "C101"]
        assert march.remark == "dock 4"
        assert march.status == "partial"  # newest row ("Shipped") wins

        april = snap.deliveries["2024-04"]
        assert april.quantity == Decimal("7")
        assert april.eta.isoformat() == "2024-04-20"
        assert april.cargo_type == "Air"

        assert snap.unassigned_quantity == Decimal("3")
        assert snap.total_quantity == Decimal("19")

    def test_delivery_to_dict_is_json_safe(self, mis_engine):
        d = MisSource(mis_engine).fetch(1).deliveries["2024-03"].to_dict()
        assert d["quantity"] == 12
        assert d["delivered_at"] == "2024-03-02"
        assert d["cargo_numbers"] == ["C100", "C101"]

    def test_item_without_orders(self, mis_engine):
        snap = MisSource(mis_engine).fetch("2")
        assert snap.article_name == "Gadget"
        assert snap.image_url is None
        assert snap.deliveries == {}

    def test_unknown_item_is_not_found(self, mis_engine):
        with pytest.raises(NotFoundError):
            MisSource(mis_engine).fetch("999")

    def test_non_numeric_key_rejected(self, mis_engine):
        with pytest.raises(ValidationError):
            MisSource(mis_engine).fetch("abc")

    def test_slow_fetch_is_transient_failure(self, mis_engine):
        ticks = iter([0.0, 100.0])
        source = MisSource(mis_engine, timeout_seconds=20, clock=lambda: next(ticks))
        with pytest.raises(TransientFetchError):
            source.fetch("1")

    def test_hung_query_is_interrupted_at_the_deadline(self, tmp_path):
        engine = create_mis_engine(f"sqlite:///{tmp_path/'slow.db'}", fetch_timeout_seconds=0.5)
        with engine.begin() as conn:
            # a scan over this view takes minutes without a statement bound
            conn.execute(
                text(
                    "CREATE VIEW items AS "
                    "WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c WHERE x < 500000000) "
                    "SELECT x AS id, 'Widget' AS item_name, 'DE-' || x AS ItemID_DE, 'w.jpg' AS photo FROM c"
                )
            )

        started = time.monotonic()
        with pytest.raises(TransientFetchError):
            MisSource(engine, timeout_seconds=0.5).search_items("no such item")
        assert time.monotonic() - started < 5

        # the pooled connection stays usable
        with engine.connect() as conn:
            assert conn.execute(text("SELECT 1")).scalar() == 1

    def test_driver_statement_bounds(self):
        assert mis_connect_args("mysql+pymysql://u:p@mis/db", 20) == {
            "connect_timeout": 20,
            "read_timeout": 20,
            "write_timeout": 20,
        }
        assert mis_connect_args("postgresql://u:p@mis/db", 2.5)["options"] == "-c statement_timeout=2000"
        assert mis_connect_args("sqlite:///mis.db", 20) == {}

    def test_database_error_is_transient(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path/'empty.db'}", future=True)
        with pytest.raises(TransientFetchError):
            MisSource(engine).fetch("1")

    def test_search_items(self, mis_engine):
        results = MisSource(mis_engine).search_items("Wid")
        assert [r["item_key"] for r in results] == ["1"]
        # items without a photo are excluded
        assert MisSource(mis_engine).search_items("Gadget") == []
        assert MisSource(mis_engine).search_items("  ") == []
