"""Infrastructure layer package.

Implements Port interfaces with concrete adapters (PostgreSQL, Redis,
JWT, in-memory). The permission and case engines depend on the ports,
never on this package directly; wiring happens in src/main.py.
"""
