"""
Directory Access service package.

Governs who may open the members directory. Access comes either from an
administrator approving a manual request or from a paid purchase that
expires. It provides:

- app.main: HTTP and WebSocket surface for admins, members, and billing.
- app.service: Orchestration of engine, store, cache, and subscriptions.
- app.access: Record model and the entitlement engine (pure decisions).
- app.persistence: Access record stores (PostgreSQL, in-memory).
- app.cache: Redis-backed caching of member access decisions.
- app.subscriptions: Live snapshot fan-out to subscribers.

Guidelines:
- The engine never performs I/O; keep decisions there, side effects here.
- "Expired" is computed from expiry_date at read time and never stored.
- Every administrative write is conditional on the state it was read in.
"""
