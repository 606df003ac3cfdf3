"""
Movement ledger tests.

Verifies:
- Unique MV-NNNNNN codes from the movimiento counter
- Input validation (types, positive quantity)
- Newest-first lookup by reference with inclusive date bounds
"""

from datetime import timedelta

import pytest

from optica.errors import ValidationError
from optica.models import Movement
from optica.services import movement_service
from optica.time_utils import utcnow


def _record(product, **overrides):
    fields = dict(
        reference_type=movement_service.REFERENCE_PRODUCT,
        product_id=product.id,
        movement_type="income",
        sub_type="purchase",
        quantity=1,
    )
    fields.update(overrides)
    return movement_service.record(**fields)


class TestRecord:

    def test_codes_are_sequential_and_unique(self, db_session, simple_product):
        first = _record(simple_product)
        second = _record(simple_product)
        db_session.commit()

        assert first.code == "MV-000001"
        assert second.code == "MV-000002"
        assert db_session.query(Movement).count() == 2

    def test_fields_are_stored(self, db_session, simple_product, admin_user):
        movement = _record(
            simple_product,
            movement_type="outflow",
            sub_type="breakage",
            quantity=3,
            actor_user_id=admin_user.id,
            related_document_type="inventory",
            related_document_reference="acta-77",
            note="Se rompio en vitrina",
        )
        db_session.commit()

        assert movement.status == "completed"
        assert movement.related_document_reference == "ACTA-77"
        assert movement.is_adjustment is False
        assert movement.occurred_at is not None
        assert movement.to_dict()["actor_name"] == admin_user.name

    def test_long_note_is_truncated(self, db_session, simple_product):
        movement = _record(simple_product, note="x" * 900)
        assert len(movement.note) == movement_service.NOTE_MAX_LENGTH

    @pytest.mark.parametrize(
        "overrides",
        [
            {"quantity": 0},
            {"quantity": -2},
            {"movement_type": "gift"},
            {"sub_type": "theft"},
            {"reference_type": "Patient"},
        ],
    )
    def test_invalid_input_rejected(self, db_session, simple_product, overrides):
        with pytest.raises(ValidationError):
            _record(simple_product, **overrides)


class TestFindByReference:

    def test_newest_first(self, db_session, simple_product):
        now = utcnow()
        old = _record(simple_product, occurred_at=now - timedelta(days=2))
        new = _record(simple_product, occurred_at=now)
        db_session.commit()

        found = movement_service.find_by_reference("Product", simple_product.id)
        assert [m.id for m in found] == [new.id, old.id]

    def test_date_bounds_are_inclusive(self, db_session, simple_product):
        now = utcnow()
        _record(simple_product, occurred_at=now - timedelta(days=10))
        inside = _record(simple_product, occurred_at=now - timedelta(days=5))
        db_session.commit()

        found = movement_service.find_by_reference(
            "Product",
            simple_product.id,
            start=inside.occurred_at,
            end=inside.occurred_at,
        )
        assert [m.id for m in found] == [inside.id]

    def test_other_references_excluded(self, db_session, simple_product, service_product):
        _record(simple_product)
        db_session.commit()

        assert movement_service.find_by_reference("Product", service_product.id) == []

    def test_unknown_reference_type(self, db_session):
        with pytest.raises(ValidationError):
            movement_service.find_by_reference("Zone", 1)
