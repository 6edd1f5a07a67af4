"""
Subscription sync services package.

WHY: Services hold the billing rules (status mapping, reconciliation,
webhook handling, statistics) separate from the API routes and the DAOs,
so the API, the CLI and the scheduler all run the same code
(API → Service → DAO).
"""
