"""
Feature modules live under this package.

Each module owns its models, service layer and blueprint, and reuses the platform
primitives in app.crm (auth, RBAC, audit, DB session).
"""
