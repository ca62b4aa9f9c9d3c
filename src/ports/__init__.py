"""Port interfaces - Layer boundary contracts.

Ports (2):
    StorePort    - Document persistence with versioned puts and change streams
    IdentityPort - Session token to Actor resolution

Strategies are chosen in src/main.py; the permission and case engines
depend only on these interfaces.
"""

from src.ports.identity_port import IdentityPort
from src.ports.store_port import ChangeStream, StorePort

__all__ = [
    "ChangeStream",
    "IdentityPort",
    "StorePort",
]
