"""
Entidades del dominio.
"""
from billing_sync.domain.entities.checkpoint import Checkpoint, PassProgress
from billing_sync.domain.entities.entity_kind import (
    EntityKind,
    dependencies_of,
    dependency_levels,
)

__all__ = [
    "Checkpoint",
    "PassProgress",
    "EntityKind",
    "dependencies_of",
    "dependency_levels",
]
