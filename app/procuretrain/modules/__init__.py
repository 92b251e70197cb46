"""
Feature modules live under this package.

Each module owns its models and routes while reusing the platform
primitives (auth, RBAC, audit, storage, DB session).
"""
