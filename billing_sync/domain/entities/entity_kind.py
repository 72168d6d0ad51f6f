"""
Tipos de entidad sincronizados y su grafo de dependencias.

El orden de sincronización se deriva del grafo: primero las entidades
independientes (clientes, planes, transferencias), luego las que dependen
de ellas (assinaturas -> faturas -> chargebacks).
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, List


class EntityKind(str, Enum):
    """
    Tipos de entidad de Iugu.

    El valor coincide con el nombre de la colección en el API.
    """
    INVOICE = "invoices"
    CUSTOMER = "customers"
    SUBSCRIPTION = "subscriptions"
    PLAN = "plans"
    TRANSFER = "transfers"
    PAYMENT_METHOD = "payment_methods"
    CHARGEBACK = "chargebacks"

    @classmethod
    def parse(cls, value: str) -> "EntityKind":
        """Acepta el valor ('invoices') o el nombre ('INVOICE'/'invoice')."""
        raw = value.strip().lower()
        for kind in cls:
            if raw in (kind.value, kind.name.lower(), kind.value.rstrip("s")):
                return kind
        raise ValueError(f"Tipo de entidad desconocido: {value}")


DEPENDENCIES: Dict[EntityKind, FrozenSet[EntityKind]] = {
    EntityKind.CUSTOMER: frozenset(),
    EntityKind.PLAN: frozenset(),
    EntityKind.TRANSFER: frozenset(),
    EntityKind.PAYMENT_METHOD: frozenset({EntityKind.CUSTOMER}),
    EntityKind.SUBSCRIPTION: frozenset({EntityKind.CUSTOMER, EntityKind.PLAN}),
    EntityKind.INVOICE: frozenset({EntityKind.CUSTOMER, EntityKind.SUBSCRIPTION}),
    EntityKind.CHARGEBACK: frozenset({EntityKind.INVOICE}),
}


def dependencies_of(kind: EntityKind) -> FrozenSet[EntityKind]:
    """Entidades que `kind` referencia por id."""
    return DEPENDENCIES[kind]


def dependency_levels(kinds: Iterable[EntityKind]) -> List[List[EntityKind]]:
    """
    Capas topológicas del subconjunto pedido.

    Cada capa solo depende de capas anteriores, por lo que los tipos de una
    misma capa pueden sincronizarse en paralelo. Las dependencias fuera del
    subconjunto se ignoran para el orden (el resolver crea placeholders).
    """
    pending = set(kinds)
    order = [k for k in EntityKind if k in pending]
    levels: List[List[EntityKind]] = []
    done: set[EntityKind] = set()

    while pending:
        level = [
            k for k in order
            if k in pending and not ((DEPENDENCIES[k] & pending) - done)
        ]
        if not level:
            raise ValueError(f"Ciclo de dependencias entre {sorted(k.value for k in pending)}")
        levels.append(level)
        done.update(level)
        pending.difference_update(level)

    return levels
