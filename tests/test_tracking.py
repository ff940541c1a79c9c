"""Change tracker: diff -> apply -> log, role-aware approval state."""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.backoffice.errors import ValidationError
from app.backoffice.modules.customers.service import create_customer
from app.backoffice.modules.scheduled_lists import service
from app.backoffice.modules.scheduled_lists.actors import CustomerActor, StaffActor
from app.backoffice.modules.scheduled_lists.models import ListActivityLog, ListItem, OrderList
from app.backoffice.modules.scheduled_lists.tracking import (
    compute_delivery_changes,
    compute_field_change,
    update_delivery,
    update_field,
    update_fields,
    update_list_field,
    values_equal,
)

STAFF = StaffActor(id=1, name="Sam Staff")
CUSTOMER = CustomerActor(id=7, name="Acme")


@pytest.fixture()
def item():
    order_list = OrderList(name="Spring order", description=None, customer_id=7, status="active")
    it = ListItem(
        item_key="1",
        article_name="Widget",
        quantity=Decimal("10.000"),
        interval="monthly",
        comment=None,
        marked=False,
        deliveries={"2024-03": {"period": "2024-03", "quantity": 5, "status": "pending", "remark": None}},
    )
    order_list.items.append(it)
    return it


class TestValuesEqual:
    def test_none_only_equals_none(self):
        assert values_equal(None, None)
        assert not values_equal(None, 0)
        assert not values_equal("", None)

    def test_numeric_comparison(self):
        assert values_equal(Decimal("10.000"), 10)
        assert values_equal(5, 5.0)
        assert not values_equal("5", 5)

    def test_compute_field_change_is_pure(self):
        assert compute_field_change("quantity", Decimal("1"), 1) is None
        change = compute_field_change("comment", None, "hi")
        assert (change.field, change.old, change.new) == ("comment", None, "hi")


class TestUpdateField:
    def test_noop_writes_nothing(self, item):
        assert update_field(item, "quantity", item.quantity, STAFF) is False
        assert item.order_list.activity_logs == []

    def test_numeric_string_equal_value_is_noop(self, item):
        assert update_field(item, "quantity", "10", STAFF) is False

    def test_staff_change_is_approved(self, item):
        assert update_field(item, "quantity", 12, STAFF) is True
        assert item.quantity == Decimal("12")
        (entry,) = item.order_list.activity_logs
        assert entry.field == "quantity"
        assert entry.old_value == 10
        assert entry.new_value == 12
        assert entry.action == "quantity changed"
        assert entry.actor_role == "staff"
        assert entry.actor_id == 1
        assert entry.item_id == item.id
        assert entry.approval_state == "approved"
        assert entry.message == 'Sam Staff changed quantity value from "10" to "12"'

    def test_customer_change_is_pending(self, item):
        assert update_field(item, "comment", "please hurry", CUSTOMER) is True
        (entry,) = item.order_list.activity_logs
        assert entry.actor_role == "customer"
        assert entry.approval_state == "pending"

    @pytest.mark.parametrize(
        "field,value",
        [("quantity", "ten"), ("quantity", -1), ("interval", "fortnightly"), ("marked", "maybe"), ("nope", 1)],
    )
    def test_validation_error_writes_no_log(self, item, field, value):
        with pytest.raises(ValidationError):
            update_field(item, field, value, CUSTOMER)
        assert item.order_list.activity_logs == []

    def test_update_fields_logs_in_declaration_order(self, item):
        changed = update_fields(item, {"marked": True, "comment": "x", "quantity": 3}, STAFF)
        assert changed == ["quantity", "comment", "marked"]
        assert [e.field for e in item.order_list.activity_logs] == ["quantity", "comment", "marked"]
        assert [e.seq for e in item.order_list.activity_logs] == [1, 2, 3]

    def test_update_fields_validates_everything_first(self, item):
        with pytest.raises(ValidationError):
            update_fields(item, {"comment": "ok", "interval": "bad"}, STAFF)
        assert item.comment is None
        assert item.order_list.activity_logs == []


class TestUpdateDelivery:
    def test_one_entry_per_changed_subfield(self, item):
        before = item.deliveries
        result = update_delivery(item, "2024-03", {"remark": "gate 2", "quantity": 5, "eta": "2024-03-30"}, CUSTOMER)
        assert result["remark"] == "gate 2"
        fields = [e.field for e in item.order_list.activity_logs]
        assert fields == ["delivery.2024-03.remark", "delivery.2024-03.eta"]
        assert all(e.approval_state == "pending" for e in item.order_list.activity_logs)
        # reassigned, not mutated in place
        assert before["2024-03"]["remark"] is None
        assert item.deliveries is not before

    def test_delivered_status_stamps_delivered_at(self, item):
        update_delivery(item, "2024-03", {"status": "delivered"}, STAFF)
        assert item.deliveries["2024-03"]["delivered_at"]
        assert [e.field for e in item.order_list.activity_logs] == [
            "delivery.2024-03.status",
            "delivery.2024-03.delivered_at",
        ]

    def test_new_period_created(self, item):
        update_delivery(item, "2024-01", {"quantity": 2}, STAFF)
        assert list(item.deliveries) == ["2024-01", "2024-03"]

    @pytest.mark.parametrize("period", ["2024-13", "March", "", None])
    def test_invalid_period_rejected_without_log(self, item, period):
        with pytest.raises(ValidationError):
            update_delivery(item, period, {"remark": "x"}, STAFF)
        assert item.order_list.activity_logs == []

    def test_invalid_subfield_value_rejected(self, item):
        with pytest.raises(ValidationError):
            update_delivery(item, "2024-03", {"remark": "x", "status": "lost"}, STAFF)
        assert item.order_list.activity_logs == []
        assert item.deliveries["2024-03"]["remark"] is None

    def test_noop_patch(self, item):
        update_delivery(item, "2024-03", {"quantity": 5.0, "status": "pending"}, STAFF)
        assert item.order_list.activity_logs == []

    def test_compute_delivery_changes(self):
        changes = compute_delivery_changes({"quantity": 1, "remark": "a"}, {"remark": "b", "quantity": 1})
        assert [(c.field, c.old, c.new) for c in changes] == [("remark", "a", "b")]


class TestListFields:
    def test_list_change_has_no_item(self, item):
        order_list = item.order_list
        assert update_list_field(order_list, "status", "disabled", CUSTOMER) is True
        (entry,) = order_list.activity_logs
        assert entry.item_id is None
        assert entry.field == "status"
        assert entry.approval_state == "pending"

    def test_name_required(self, item):
        with pytest.raises(ValidationError):
            update_list_field(item.order_list, "name", "  ", STAFF)

    def test_noop(self, item):
        assert update_list_field(item.order_list, "description", None, STAFF) is False


def test_concurrent_writers_keep_log_order(session_factory):
    setup = session_factory()
    customer = create_customer(setup, company_name="Acme", email="a@acme.test", password="pw")
    list_id = service.create_list(setup, actor=STAFF, name="Spring", customer_id=customer.id).id
    setup.commit()
    setup.close()

    slow, fast = session_factory(), session_factory()
    try:
        stale = service.get_list(slow, list_id)
        assert stale.activity_logs == []
        slow.commit()

        service.update_list(fast, list_id, {"description": "first"}, STAFF)
        fast.commit()
        # `slow` still holds the log collection it read before `fast` wrote
        service.update_list(slow, list_id, {"status": "disabled"}, STAFF)
        slow.commit()
    finally:
        slow.close()
        fast.close()

    check = session_factory()
    try:
        logs = check.get(OrderList, list_id).activity_logs
        assert [e.seq for e in logs] == [1, 1]
        assert [e.field for e in logs] == ["description", "status"]
    finally:
        check.close()


def test_repeated_seq_falls_back_to_time_order(session_factory):
    s = session_factory()
    try:
        customer = create_customer(s, company_name="Acme", email="a@acme.test", password="pw")
        order_list = service.create_list(s, actor=STAFF, name="Spring", customer_id=customer.id)
        noon = datetime(2024, 3, 1, 12, 0)
        common = dict(list_id=order_list.id, seq=4, action="comment changed", actor_role="customer", actor_id=customer.id)
        # the later write reaches the database first
        s.add(ListActivityLog(field="comment", message="second", created_at=noon + timedelta(seconds=3), **common))
        s.flush()
        s.add(ListActivityLog(field="comment", message="first", created_at=noon, **common))
        s.commit()
        list_id = order_list.id
    finally:
        s.close()

    check = session_factory()
    try:
        assert [e.message for e in check.get(OrderList, list_id).activity_logs] == ["first", "second"]
    finally:
        check.close()
