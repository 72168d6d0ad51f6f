"""
Interfaces de repositorio del dominio.
"""
from billing_sync.domain.repositories.destination import SyncDestination, UpsertOutcome

__all__ = ["SyncDestination", "UpsertOutcome"]
