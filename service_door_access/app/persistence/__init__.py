"""
Persistence package for the Door Access Service.

Defines the collaborator interfaces the engine consumes and ships a
PostgreSQL implementation for deployments and an in-memory one for local
runs and tests.
"""
