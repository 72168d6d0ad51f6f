import pytest

from billing_sync.domain.entities.entity_kind import EntityKind, dependencies_of, dependency_levels


def test_parse_accepts_value_name_and_singular():
    assert EntityKind.parse("invoices") == EntityKind.INVOICE
    assert EntityKind.parse("INVOICE") == EntityKind.INVOICE
    assert EntityKind.parse(" payment_method ") == EntityKind.PAYMENT_METHOD
    with pytest.raises(ValueError):
        EntityKind.parse("orders")


def test_dependencies_follow_references():
    assert dependencies_of(EntityKind.SUBSCRIPTION) == {EntityKind.CUSTOMER, EntityKind.PLAN}
    assert dependencies_of(EntityKind.INVOICE) == {EntityKind.CUSTOMER, EntityKind.SUBSCRIPTION}
    assert dependencies_of(EntityKind.CHARGEBACK) == {EntityKind.INVOICE}
    assert dependencies_of(EntityKind.CUSTOMER) == frozenset()


def test_dependency_levels_for_all_kinds():
    levels = dependency_levels(list(EntityKind))
    assert levels == [
        [EntityKind.CUSTOMER, EntityKind.PLAN, EntityKind.TRANSFER],
        [EntityKind.SUBSCRIPTION, EntityKind.PAYMENT_METHOD],
        [EntityKind.INVOICE],
        [EntityKind.CHARGEBACK],
    ]


def test_dependency_levels_ignore_kinds_outside_selection():
    levels = dependency_levels([EntityKind.CHARGEBACK, EntityKind.CUSTOMER, EntityKind.INVOICE])
    assert levels == [[EntityKind.CUSTOMER], [EntityKind.INVOICE], [EntityKind.CHARGEBACK]]

    assert dependency_levels([EntityKind.INVOICE]) == [[EntityKind.INVOICE]]
