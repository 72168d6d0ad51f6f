"""
Mapeos Iugu -> Postgres por entidad.

Este es el punto central para controlar:
- qué columnas existen en Postgres (alineado con `schema.sql`)
- cómo se transforman los valores de Iugu
- cómo se resuelven relaciones (FKs) y qué pistas usa cada placeholder

Agregar una entidad = agregar un EntityDescriptor aquí (y su DDL).
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from loguru import logger

from billing_sync.domain.entities.entity_kind import EntityKind
from billing_sync.shared.utils.date_normalizer import normalize_timestamp

from .sync_config import EntityDescriptor
from .types import (
    FieldMapping,
    ForeignReference,
    MoneyField,
    NormalizedRecord,
    first_present,
    parse_decimal_to_minor_units,
    parse_minor_units,
    to_bool,
    to_int,
)

_AUDIT_TIMESTAMPS = {"created_at": "created_at_iugu", "updated_at": "updated_at_iugu"}


def _customer_hints_from_invoice(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "name": first_present(payload, "customer_name", "payer_name"),
        "email": first_present(payload, "email", "payer_email"),
        "cpf_cnpj": payload.get("payer_cpf_cnpj"),
    }


def _customer_hints_from_subscription(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "name": payload.get("customer_name"),
        "email": payload.get("customer_email"),
    }


def _plan_hints_from_subscription(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "name": payload.get("plan_name"),
        "value_cents": parse_minor_units(payload.get("price_cents")),
    }


def _subscription_hints_from_invoice(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {"customer_id": payload.get("customer_id")}


CUSTOMERS = EntityDescriptor(
    kind=EntityKind.CUSTOMER,
    endpoint="/customers",
    target_table="iugu_customers",
    field_mappings=[
        FieldMapping("email", "email"),
        FieldMapping("name", "name"),
        FieldMapping("cpf_cnpj", "cpf_cnpj"),
        FieldMapping("phone", "phone"),
    ],
    timestamp_fields=dict(_AUDIT_TIMESTAMPS),
)

PLANS = EntityDescriptor(
    kind=EntityKind.PLAN,
    endpoint="/plans",
    target_table="iugu_plans",
    id_field="identifier",
    field_mappings=[
        FieldMapping("id", "iugu_id"),
        FieldMapping("name", "name"),
        FieldMapping("interval", "interval", transform=to_int),
        FieldMapping("interval_type", "interval_type"),
    ],
    money_fields=[MoneyField("value_cents", "value_cents", "value")],
    timestamp_fields=dict(_AUDIT_TIMESTAMPS),
    placeholder_defaults={"interval": 1, "interval_type": "months"},
)

SUBSCRIPTIONS = EntityDescriptor(
    kind=EntityKind.SUBSCRIPTION,
    endpoint="/subscriptions",
    target_table="iugu_subscriptions",
    field_mappings=[
        FieldMapping("suspended", "suspended", transform=to_bool),
        FieldMapping("active", "active", transform=to_bool),
    ],
    references=[
        ForeignReference(
            EntityKind.CUSTOMER, "customer_id", ("customer_id",),
            hints=_customer_hints_from_subscription,
        ),
        ForeignReference(
            EntityKind.PLAN, "plan_identifier", ("plan_identifier", "plan_id"),
            hints=_plan_hints_from_subscription,
        ),
    ],
    money_fields=[MoneyField("price_cents", "price_cents", "price")],
    timestamp_fields={"expires_at": "expires_at", **_AUDIT_TIMESTAMPS},
)

INVOICES = EntityDescriptor(
    kind=EntityKind.INVOICE,
    endpoint="/invoices",
    target_table="iugu_invoices",
    field_mappings=[
        FieldMapping("status", "status"),
        FieldMapping("payment_method", "payment_method"),
        FieldMapping("external_reference", "external_reference"),
        FieldMapping("order_id", "order_id"),
        FieldMapping("payer_name", "payer_name"),
        FieldMapping("payer_email", "payer_email"),
        FieldMapping("payer_cpf_cnpj", "payer_cpf_cnpj"),
        FieldMapping("secure_url", "secure_url"),
    ],
    references=[
        ForeignReference(
            EntityKind.CUSTOMER, "customer_id", ("customer_id",),
            hints=_customer_hints_from_invoice,
        ),
        ForeignReference(
            EntityKind.SUBSCRIPTION, "subscription_id", ("subscription_id",),
            hints=_subscription_hints_from_invoice,
        ),
    ],
    money_fields=[
        MoneyField("total_cents", "total_cents", "total"),
        MoneyField("paid_cents", "paid_cents", "paid"),
        MoneyField("discount_cents", "discount_cents", "discount"),
        MoneyField("taxes_cents", "taxes_cents", "taxes"),
        MoneyField("commission_cents", "commission_cents", "commission"),
    ],
    timestamp_fields={"due_date": "due_date", "paid_at": "paid_at", **_AUDIT_TIMESTAMPS},
)

TRANSFERS = EntityDescriptor(
    kind=EntityKind.TRANSFER,
    endpoint="/transfers",
    target_table="iugu_transfers",
    field_mappings=[
        FieldMapping("status", "status"),
    ],
    money_fields=[MoneyField("amount_cents", "amount_cents", "amount_localized")],
    timestamp_fields=dict(_AUDIT_TIMESTAMPS),
)

PAYMENT_METHODS = EntityDescriptor(
    kind=EntityKind.PAYMENT_METHOD,
    endpoint="/payment_methods",
    target_table="iugu_payment_methods",
    field_mappings=[
        FieldMapping("description", "description"),
        FieldMapping("item_type", "item_type"),
        FieldMapping("brand", "brand"),
        FieldMapping("last_four_digits", "last_four_digits"),
    ],
    references=[
        ForeignReference(EntityKind.CUSTOMER, "customer_id", ("customer_id",)),
    ],
    timestamp_fields=dict(_AUDIT_TIMESTAMPS),
)

CHARGEBACKS = EntityDescriptor(
    kind=EntityKind.CHARGEBACK,
    endpoint="/chargebacks",
    target_table="iugu_chargebacks",
    field_mappings=[
        FieldMapping("status", "status"),
        FieldMapping("reason", "reason"),
    ],
    references=[
        ForeignReference(EntityKind.INVOICE, "invoice_id", ("invoice_id",)),
    ],
    money_fields=[MoneyField("amount_cents", "amount_cents", "amount")],
    timestamp_fields=dict(_AUDIT_TIMESTAMPS),
)

DESCRIPTORS: Dict[EntityKind, EntityDescriptor] = {
    d.kind: d
    for d in (CUSTOMERS, PLANS, SUBSCRIPTIONS, INVOICES, TRANSFERS, PAYMENT_METHODS, CHARGEBACKS)
}


def map_source_record(
    payload: Mapping[str, Any],
    *,
    descriptor: EntityDescriptor,
    reference_year: int,
) -> Optional[NormalizedRecord]:
    """
    Mapea un payload de Iugu a un NormalizedRecord.

    Reglas:
    - Sin id no hay fila posible: se loguea y se retorna None (skipped).
    - Timestamps no parseables quedan en NULL y se loguean.
    - Montos siempre en centavos (int).
    - El payload original se conserva en `raw` para replay forense.
    """
    record_id = payload.get(descriptor.id_field)
    if record_id in (None, ""):
        logger.warning(
            f"{descriptor.kind.value}: registro sin '{descriptor.id_field}', se omite "
            f"(id iugu={payload.get('id')})"
        )
        return None
    record_id = str(record_id)

    values: Dict[str, Any] = {}

    for m in descriptor.field_mappings:
        raw = payload.get(m.source_field)
        if raw is None and m.required:
            logger.warning(
                f"{descriptor.kind.value} {record_id}: falta campo requerido '{m.source_field}'"
            )
        values[m.column] = m.transform(raw) if (m.transform and raw is not None) else raw

    for ref in descriptor.references:
        values[ref.column] = ref.extract_id(payload)

    for source_field, column in descriptor.timestamp_fields.items():
        raw = payload.get(source_field)
        normalized = normalize_timestamp(raw, reference_year)
        if normalized is None and raw not in (None, ""):
            logger.warning(
                f"{descriptor.kind.value} {record_id}: timestamp inválido en "
                f"'{source_field}': {raw!r} (se guarda NULL)"
            )
        values[column] = normalized

    for money in descriptor.money_fields:
        cents = parse_minor_units(payload.get(money.cents_field))
        if cents is None and money.decimal_field:
            cents = parse_decimal_to_minor_units(payload.get(money.decimal_field))
        values[money.column] = cents

    return NormalizedRecord(
        kind=descriptor.kind,
        record_id=record_id,
        values=values,
        raw=dict(payload),
    )


def build_placeholder(
    descriptor: EntityDescriptor,
    record_id: str,
    hints: Mapping[str, Any],
    *,
    referenced_by: Optional[str] = None,
) -> NormalizedRecord:
    """
    Arma un registro mínimo (stub) para satisfacer una FK.

    Solo usa columnas conocidas del descriptor; las pistas desconocidas se ignoran.
    """
    columns = set(descriptor.data_columns)
    values: Dict[str, Any] = {c: None for c in descriptor.data_columns}
    for source in (descriptor.placeholder_defaults, hints):
        for key, value in source.items():
            if key in columns and value is not None:
                values[key] = value

    raw = {"placeholder": True, "id": record_id}
    if referenced_by:
        raw["referenced_by"] = referenced_by

    return NormalizedRecord(
        kind=descriptor.kind,
        record_id=str(record_id),
        values=values,
        raw=raw,
        is_placeholder=True,
    )
