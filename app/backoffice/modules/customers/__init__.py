"""
Customers module.

Scope:
- Customer accounts (login identity + list ownership)
- Lookup helpers used by the scheduled lists module
"""
