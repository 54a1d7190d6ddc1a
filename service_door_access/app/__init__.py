"""
Door Access Service package for the Door Access Layer.

This package decides whether a user may open a door right now and keeps
an immutable audit trail of every decision. It provides:

- app.main: API surface for evaluation, rule administration and access logs.
- app.rules: Rule models, matcher, resolver and the evaluation engine.
- app.proximity: Bluetooth proximity gate.
- app.context: User/membership context resolution.
- app.audit: Access log writing and analytics.
- app.persistence: Collaborator interfaces plus PostgreSQL and in-memory stores.

Guidelines:
- The service is stateless; decisions are never cached.
- Fail closed: any collaborator error denies.
- Keep evaluation deterministic and observable (metrics + logs).
"""
