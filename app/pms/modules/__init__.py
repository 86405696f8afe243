"""
Feature modules live under this package.

Each module owns its models, service and routes, and reuses the platform
primitives (access policy, audit, event bus, DB session).
"""
