"""
Scheduled order lists.

Customer-owned lists of items mirrored from the legacy operations (MIS) database:
- Period bucketing of delivery rows (periods.py)
- MIS fetch + delivery folding (mis_source.py)
- Reconciliation of snapshots into local items (reconcile.py)
- Role-aware change log (tracking.py) and staff acknowledgment (acknowledgments.py)
- Batch refresh + background scheduler (refresh.py, scheduler.py)
"""
