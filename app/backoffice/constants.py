"""
Central constants for the back-office application.
"""
from __future__ import annotations

# Order list lifecycle
LIST_STATUS_ACTIVE = "active"
LIST_STATUS_DISABLED = "disabled"
LIST_STATUS_DRAFTED = "drafted"
LIST_STATUSES = frozenset({LIST_STATUS_ACTIVE, LIST_STATUS_DISABLED, LIST_STATUS_DRAFTED})

# Delivery interval per list item
INTERVALS = frozenset({"daily", "weekly", "monthly", "quarterly", "biannually", "yearly"})
DEFAULT_INTERVAL = "monthly"

# Delivery status per period
DELIVERY_PENDING = "pending"
DELIVERY_PARTIAL = "partial"
DELIVERY_DELIVERED = "delivered"
DELIVERY_CANCELLED = "cancelled"
DELIVERY_STATUSES = frozenset({DELIVERY_PENDING, DELIVERY_PARTIAL, DELIVERY_DELIVERED, DELIVERY_CANCELLED})

# Actor roles recorded on activity-log entries
ROLE_STAFF = "staff"
ROLE_CUSTOMER = "customer"

# Activity-log approval states
APPROVAL_PENDING = "pending"
APPROVAL_APPROVED = "approved"
APPROVAL_REJECTED = "rejected"

# Legacy operations system order statuses -> delivery status
MIS_ORDER_STATUS_MAP = {
    "invoiced": DELIVERY_DELIVERED,
    "delivered": DELIVERY_DELIVERED,
    "shipped": DELIVERY_PARTIAL,
    "partial": DELIVERY_PARTIAL,
    "cancelled": DELIVERY_CANCELLED,
    "canceled": DELIVERY_CANCELLED,
    "pending": DELIVERY_PENDING,
    "open": DELIVERY_PENDING,
}

LIST_PERMISSIONS = (
    ("lists.view", "Lists: view"),
    ("lists.edit", "Lists: edit"),
    ("lists.acknowledge", "Lists: acknowledge customer changes"),
    ("lists.refresh", "Lists: refresh from MIS"),
)
