"""
Approval Workflow Engine

Multi-step sign-off for buy-planning business objects (budget allocations,
open-to-buy plans, SKU proposals) with role-based routing, optimistic
concurrency and SLA escalation.
"""

__version__ = "1.0.0"
