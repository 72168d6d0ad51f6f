from __future__ import annotations

import pytest

from billing_sync.domain.entities.entity_kind import EntityKind
from billing_sync.domain.repositories.destination import UpsertOutcome
from billing_sync.infrastructure.external.iugu_sync.dependency_resolver import DependencyResolver
from billing_sync.infrastructure.external.iugu_sync.retry_governor import ConsecutiveErrorBudget
from billing_sync.infrastructure.external.iugu_sync.table_mappings import (
    CUSTOMERS,
    INVOICES,
    map_source_record,
)
from billing_sync.infrastructure.external.iugu_sync.upsert_sink import UpsertSink
from billing_sync.shared.exceptions import (
    DestinationError,
    MissingParentError,
    RecordAlreadyExistsError,
    SystemicSyncError,
    TransientDestinationError,
)
from conftest import RUN_START


def _sink(destination, governor, budget=None):
    resolver = DependencyResolver(destination, governor, clock=lambda: RUN_START)
    return UpsertSink(destination, governor, resolver, budget=budget, clock=lambda: RUN_START)


def _customer(**payload):
    return map_source_record({"id": "C1", **payload}, descriptor=CUSTOMERS, reference_year=2025)


def test_insert_then_unchanged_then_updated(destination, governor):
    sink = _sink(destination, governor)

    assert sink.upsert(EntityKind.CUSTOMER, _customer(name="Ana")).outcome == UpsertOutcome.INSERTED
    assert sink.upsert(EntityKind.CUSTOMER, _customer(name="Ana")).outcome == UpsertOutcome.UNCHANGED
    assert sink.upsert(EntityKind.CUSTOMER, _customer(name="Ana Maria")).outcome == UpsertOutcome.UPDATED
    assert destination.rows(EntityKind.CUSTOMER)["C1"]["name"] == "Ana Maria"


def test_null_incoming_field_does_not_erase_stored_value(destination, governor):
    sink = _sink(destination, governor)
    sink.upsert(EntityKind.CUSTOMER, _customer(name="Ana", email="ana@example.com"))
    sink.upsert(EntityKind.CUSTOMER, _customer(name="Ana"))
    assert destination.rows(EntityKind.CUSTOMER)["C1"]["email"] == "ana@example.com"


def test_missing_parent_is_resolved_and_retried_once(destination, governor):
    sink = _sink(destination, governor)
    invoice = map_source_record(
        {"id": "INV1", "customer_id": "C404", "customer_name": "Sem cadastro"},
        descriptor=INVOICES,
        reference_year=2025,
    )

    result = sink.upsert(EntityKind.INVOICE, invoice)

    assert result.outcome == UpsertOutcome.INSERTED
    assert result.placeholders == 1
    assert destination.rows(EntityKind.CUSTOMER)["C404"]["is_placeholder"] is True
    assert destination.rows(EntityKind.INVOICE)["INV1"]["customer_id"] == "C404"


def test_repeated_missing_parent_is_an_error_after_two_writes(destination, governor):
    destination.fail_upserts_for = (
        lambda record: MissingParentError("invoices", record.record_id, "customer_id", "C404")
    )
    invoice = map_source_record({"id": "INV1", "customer_id": "C404"}, descriptor=INVOICES, reference_year=2025)

    result = _sink(destination, governor).upsert(EntityKind.INVOICE, invoice)

    assert result.outcome == UpsertOutcome.ERROR
    assert isinstance(result.error, MissingParentError)
    assert len(destination.upsert_errors) == 2
    assert result.placeholders == 1
    assert destination.placeholder_inserts == [(EntityKind.CUSTOMER, "C404")]
    assert "INV1" not in destination.rows(EntityKind.INVOICE)


def test_already_exists_is_a_successful_noop(destination, governor):
    destination.fail_upserts_for = lambda record: RecordAlreadyExistsError("customers", record.record_id)
    result = _sink(destination, governor).upsert(EntityKind.CUSTOMER, _customer(name="Ana"))
    assert result.ok
    assert result.outcome == UpsertOutcome.UNCHANGED


def test_transient_destination_error_is_retried(destination, governor, sleeps):
    failures = [TransientDestinationError("connection reset")]
    destination.fail_upserts_for = lambda record: failures.pop() if failures else None

    result = _sink(destination, governor).upsert(EntityKind.CUSTOMER, _customer(name="Ana"))

    assert result.outcome == UpsertOutcome.INSERTED
    assert sleeps == [2.0]


def test_failures_across_records_trip_the_budget(destination, governor):
    destination.fail_upserts_for = lambda record: DestinationError("check constraint")
    sink = _sink(destination, governor, budget=ConsecutiveErrorBudget(threshold=3))

    assert sink.upsert(EntityKind.CUSTOMER, _customer()).outcome == UpsertOutcome.ERROR
    assert sink.upsert(EntityKind.CUSTOMER, _customer()).outcome == UpsertOutcome.ERROR
    with pytest.raises(SystemicSyncError):
        sink.upsert(EntityKind.CUSTOMER, _customer())
