"""
Sale assembly tests.

Verifies:
- Scenarios A-D of the sale flow (zoned stock, payments, overpayment, missing zone)
- Forbidden server-derived fields and client prices rejected
- All-or-nothing: a failure at any stage leaves no sale, movement, stock
  change or consumed OT number behind
- Merged decrements, scalar and service lines
- Staff-name edits, delivery updates and admin deletion with stock reversal
"""

import pytest

from optica.errors import (
    AmountExceedsTotalError,
    ForbiddenFieldError,
    NotFoundError,
    OpticaError,
    ValidationError,
    ZoneNotStockedError,
    ZoneRequiredError,
)
from optica.models import Counter, Movement, Payment, Pickup, PickupAdvance, Product, Sale, SaleLine, ZoneStock
from optica.services import movement_service, sales_service
from optica.services.sequence_service import SALE_OT_COUNTER, current_value


def _zone_stock(db_session, zone_id, variant_id=None, measure_id=None) -> int:
    db_session.expire_all()
    return db_session.query(ZoneStock).filter_by(
        zone_id=zone_id, variant_id=variant_id, measure_id=measure_id
    ).one().stock


def _lens_item(lens_product, lens_measure, zone_a, quantity=2, **extra):
    item = {
        "product_id": lens_product.id,
        "measure_id": lens_measure.id,
        "zone_id": zone_a.id,
        "quantity": quantity,
    }
    item.update(extra)
    return item


def _assert_nothing_persisted(db_session, lens_measure, zone_a):
    db_session.expire_all()
    assert db_session.query(Sale).count() == 0
    assert db_session.query(SaleLine).count() == 0
    assert db_session.query(Movement).count() == 0
    assert db_session.query(Payment).count() == 0
    assert db_session.query(Pickup).count() == 0
    assert current_value(SALE_OT_COUNTER) == 0
    assert _zone_stock(db_session, zone_a.id, measure_id=lens_measure.id) == 5


# =============================================================================
# SCENARIOS
# =============================================================================

class TestScenarios:

    def test_ot_comes_from_sequence(self, db_session, sale_payload, lens_product, lens_measure, zone_a, monkeypatch):
        monkeypatch.setattr(sales_service, "next_ot_number", lambda: "004321")

        sale = sales_service.create_sale(sale_payload([_lens_item(lens_product, lens_measure, zone_a)]))

        assert sale.ot_number == "004321"
        assert sales_service.get_sale_movements(sale.id)[0].related_document_reference == "OT-004321"

    def test_a_sale_without_payment(self, db_session, sale_payload, lens_product, lens_measure, zone_a, seller_user):
        sale = sales_service.create_sale(
            sale_payload([_lens_item(lens_product, lens_measure, zone_a)]),
            actor_user_id=seller_user.id,
        )

        assert sale.ot_number == "000001"
        assert sale.total_cents == 200
        assert sale.balance_cents == 200
        assert sale.total_paid_cents == 0
        assert sale.percent_paid == 0.0
        assert sale.cancelled_at is None
        assert sale.delivery_state == "AT_STORE"
        assert sale.customer_name == "Rosa Quispe"
        assert _zone_stock(db_session, zone_a.id, measure_id=lens_measure.id) == 3
        assert db_session.get(Product, lens_product.id).stock_general == 3
        assert db_session.query(Pickup).count() == 0

        line = sale.lines[0]
        assert line.unit_price_cents == 100
        assert line.line_total_cents == 200
        assert line.stock_source == "measure"

    def test_b_payment_creates_recojo(self, db_session, sale_payload, lens_product, lens_measure, zone_a):
        payload = sale_payload(
            [_lens_item(lens_product, lens_measure, zone_a)],
            payments=[{"amount_cents": 120, "method": "EFECTIVO"}],
        )
        sale = sales_service.create_sale(payload)

        assert sale.balance_cents == 80
        assert sale.percent_paid == 60.0
        pickup = db_session.query(Pickup).filter_by(sale_id=sale.id).one()
        assert pickup.kind == "RECOJO"
        assert sale.to_dict()["pickup_ids"] == [pickup.id]

    def test_c_overpayment_rejected(self, db_session, sale_payload, lens_product, lens_measure, zone_a):
        payload = sale_payload(
            [_lens_item(lens_product, lens_measure, zone_a)],
            payments=[{"amount_cents": 250, "method": "EFECTIVO"}],
        )
        with pytest.raises(AmountExceedsTotalError) as exc:
            sales_service.create_sale(payload)

        assert exc.value.details["stage"] == "RECONCILING_PAYMENTS"
        _assert_nothing_persisted(db_session, lens_measure, zone_a)

    def test_d_missing_zone(self, db_session, sale_payload, lens_product, lens_measure, zone_a):
        item = {"product_id": lens_product.id, "measure_id": lens_measure.id, "quantity": 1}
        with pytest.raises(ZoneRequiredError) as exc:
            sales_service.create_sale(sale_payload([item]))

        assert exc.value.details["stage"] == "RESOLVING_LINES"
        _assert_nothing_persisted(db_session, lens_measure, zone_a)


# =============================================================================
# VALIDATION
# =============================================================================

class TestValidation:

    @pytest.mark.parametrize("field", ["ot_number", "total_cents", "balance_cents", "percent_paid"])
    def test_server_fields_forbidden(self, db_session, sale_payload, lens_product, lens_measure, zone_a, field):
        payload = sale_payload([_lens_item(lens_product, lens_measure, zone_a)], **{field: 1})
        with pytest.raises(ForbiddenFieldError) as exc:
            sales_service.create_sale(payload)

        assert exc.value.fields == [field]
        assert exc.value.details["stage"] == "VALIDATING"
        _assert_nothing_persisted(db_session, lens_measure, zone_a)

    def test_item_price_forbidden(self, db_session, sale_payload, lens_product, lens_measure, zone_a):
        payload = sale_payload([_lens_item(lens_product, lens_measure, zone_a, unit_price_cents=1)])
        with pytest.raises(ForbiddenFieldError):
            sales_service.create_sale(payload)

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda p: p.pop("patient_id"),
            lambda p: p.update(patient_id="abc"),
            lambda p: p.update(store_id=None),
            lambda p: p.update(items=[]),
            lambda p: p.update(items="lens"),
            lambda p: p["items"][0].update(quantity=0),
            lambda p: p["items"][0].update(quantity="2"),
            lambda p: p["items"][0].pop("product_id"),
            lambda p: p.update(delivery_state="LOST"),
            lambda p: p.update(payments=[{"amount_cents": 10, "method": "CHEQUE"}]),
        ],
    )
    def test_malformed_requests(self, db_session, sale_payload, lens_product, lens_measure, zone_a, mutate):
        payload = sale_payload([_lens_item(lens_product, lens_measure, zone_a)])
        mutate(payload)
        with pytest.raises(ValidationError):
            sales_service.create_sale(payload)
        _assert_nothing_persisted(db_session, lens_measure, zone_a)

    def test_string_ids_accepted(self, db_session, sale_payload, patient, store, lens_product, lens_measure, zone_a):
        payload = sale_payload(
            [_lens_item(lens_product, lens_measure, zone_a)],
            patient_id=str(patient.id),
            store_id=str(store.id),
        )
        sale = sales_service.create_sale(payload)
        assert sale.patient_id == patient.id

    @pytest.mark.parametrize("field", ["patient_id", "store_id"])
    def test_unknown_patient_or_store(self, db_session, sale_payload, lens_product, lens_measure, zone_a, field):
        payload = sale_payload([_lens_item(lens_product, lens_measure, zone_a)], **{field: 9999})
        with pytest.raises(NotFoundError):
            sales_service.create_sale(payload)
        _assert_nothing_persisted(db_session, lens_measure, zone_a)


# =============================================================================
# LINE RESOLUTION
# =============================================================================

class TestLineResolution:

    def test_unknown_product(self, db_session, sale_payload, lens_product, lens_measure, zone_a):
        payload = sale_payload([
            _lens_item(lens_product, lens_measure, zone_a),
            {"product_id": 4242, "quantity": 1},
        ])
        with pytest.raises(NotFoundError) as exc:
            sales_service.create_sale(payload)

        assert exc.value.details["stage"] == "RESOLVING_LINES"
        _assert_nothing_persisted(db_session, lens_measure, zone_a)

    def test_measure_of_another_product(self, db_session, sale_payload, frame_product, lens_measure, lens_product, zone_a):
        item = {"product_id": frame_product.id, "measure_id": lens_measure.id, "zone_id": zone_a.id, "quantity": 1}
        with pytest.raises(NotFoundError):
            sales_service.create_sale(sale_payload([item]))
        _assert_nothing_persisted(db_session, lens_measure, zone_a)

    def test_unstocked_zone(self, db_session, sale_payload, lens_product, lens_measure, zone_a, zone_b):
        with pytest.raises(ZoneNotStockedError):
            sales_service.create_sale(sale_payload([_lens_item(lens_product, lens_measure, zone_b)]))
        _assert_nothing_persisted(db_session, lens_measure, zone_a)

    def test_unknown_zone(self, db_session, sale_payload, lens_product, lens_measure, zone_a):
        with pytest.raises(NotFoundError):
            sales_service.create_sale(sale_payload([
                {"product_id": lens_product.id, "measure_id": lens_measure.id, "zone_id": 8888, "quantity": 1},
            ]))

    def test_zoned_product_needs_variant_or_measure(self, db_session, sale_payload, lens_product, lens_measure, zone_a):
        with pytest.raises(ValidationError):
            sales_service.create_sale(sale_payload([{"product_id": lens_product.id, "zone_id": zone_a.id, "quantity": 1}]))
        _assert_nothing_persisted(db_session, lens_measure, zone_a)

    def test_variant_price_follows_zone(self, db_session, sale_payload, frame_product, frame_variant, zone_b):
        sale = sales_service.create_sale(sale_payload([
            {"product_id": frame_product.id, "variant_id": frame_variant.id, "zone_id": zone_b.id, "quantity": 1},
        ]))
        assert sale.total_cents == 26000
        assert _zone_stock(db_session, zone_b.id, variant_id=frame_variant.id) == 1
        assert db_session.get(Product, frame_product.id).stock_general == 5


# =============================================================================
# STOCK
# =============================================================================

class TestStock:

    def test_lines_on_same_measure_are_combined(self, db_session, sale_payload, lens_product, lens_measure, zone_a):
        sale = sales_service.create_sale(sale_payload([
            _lens_item(lens_product, lens_measure, zone_a, quantity=2),
            _lens_item(lens_product, lens_measure, zone_a, quantity=2),
        ]))

        assert sale.total_cents == 400
        assert _zone_stock(db_session, zone_a.id, measure_id=lens_measure.id) == 1
        assert db_session.query(Movement).filter_by(sale_id=sale.id).count() == 2

    def test_oversell_floors_at_zero(self, db_session, sale_payload, lens_product, lens_measure, zone_a):
        sales_service.create_sale(sale_payload([_lens_item(lens_product, lens_measure, zone_a, quantity=8)]))

        assert _zone_stock(db_session, zone_a.id, measure_id=lens_measure.id) == 0
        assert db_session.get(Product, lens_product.id).stock_general == 0

    def test_deleting_oversold_sale_returns_full_quantity(self, db_session, sale_payload, lens_product, lens_measure, zone_a):
        sale = sales_service.create_sale(sale_payload([_lens_item(lens_product, lens_measure, zone_a, quantity=8)]))

        result = sales_service.delete_sale(sale.id)

        assert result["restored"][0]["quantity"] == 8
        assert _zone_stock(db_session, zone_a.id, measure_id=lens_measure.id) == 8
        assert db_session.get(Product, lens_product.id).stock_general == 8

    def test_scalar_product(self, db_session, sale_payload, simple_product):
        sale = sales_service.create_sale(sale_payload([{"product_id": simple_product.id, "quantity": 3}]))

        assert sale.total_cents == 4500
        assert sale.lines[0].stock_source == "product"
        db_session.expire_all()
        assert db_session.get(Product, simple_product.id).stock_general == 7

    def test_service_product_never_touches_stock(self, db_session, sale_payload, service_product):
        sale = sales_service.create_sale(sale_payload([{"product_id": service_product.id, "quantity": 1}]))

        assert sale.total_cents == 3000
        assert sale.lines[0].stock_source is None
        db_session.expire_all()
        assert db_session.get(Product, service_product.id).stock_general == 0

    def test_sale_movements(self, db_session, sale_payload, lens_product, lens_measure, zone_a, seller_user):
        sale = sales_service.create_sale(
            sale_payload([_lens_item(lens_product, lens_measure, zone_a)]),
            actor_user_id=seller_user.id,
        )

        movements = sales_service.get_sale_movements(sale.id)
        assert len(movements) == 1
        movement = movements[0]
        assert movement.reference_type == "Sale"
        assert movement.movement_type == "outflow"
        assert movement.sub_type == "sale"
        assert movement.quantity == 2
        assert movement.measure_id == lens_measure.id
        assert movement.zone_id == zone_a.id
        assert movement.actor_user_id == seller_user.id
        assert movement.related_document_reference == "OT-000001"
        assert movement.code.startswith("MV-")


# =============================================================================
# ATOMICITY
# =============================================================================

class TestAtomicity:

    def test_movement_failure_rolls_back_everything(self, db_session, sale_payload, lens_product, lens_measure, zone_a, monkeypatch):
        def _fail(*args, **kwargs):
            raise ValidationError("ledger unavailable")

        monkeypatch.setattr(movement_service, "record_sale_movements", _fail)
        with pytest.raises(ValidationError) as exc:
            sales_service.create_sale(sale_payload([_lens_item(lens_product, lens_measure, zone_a)]))

        assert exc.value.details["stage"] == "RECORDING_MOVEMENTS"
        _assert_nothing_persisted(db_session, lens_measure, zone_a)

    def test_linking_failure_rolls_back_everything(self, db_session, sale_payload, lens_product, lens_measure, zone_a, monkeypatch):
        def _fail(*args, **kwargs):
            raise OpticaError("pickup store offline")

        monkeypatch.setattr(sales_service, "link_pickup", _fail)
        payload = sale_payload(
            [_lens_item(lens_product, lens_measure, zone_a)],
            payments=[{"amount_cents": 50, "method": "EFECTIVO"}],
        )
        with pytest.raises(OpticaError) as exc:
            sales_service.create_sale(payload)

        assert exc.value.details["stage"] == "LINKING_DEPENDENT_RECORD"
        _assert_nothing_persisted(db_session, lens_measure, zone_a)
        assert db_session.query(PickupAdvance).count() == 0

    def test_unexpected_error_rolls_back_everything(self, db_session, sale_payload, lens_product, lens_measure, zone_a, monkeypatch):
        def _boom(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(movement_service, "record_sale_movements", _boom)
        with pytest.raises(RuntimeError):
            sales_service.create_sale(sale_payload([_lens_item(lens_product, lens_measure, zone_a)]))

        _assert_nothing_persisted(db_session, lens_measure, zone_a)

    def test_failed_sale_does_not_consume_ot(self, db_session, sale_payload, lens_product, lens_measure, zone_a, zone_b):
        with pytest.raises(ZoneNotStockedError):
            sales_service.create_sale(sale_payload([_lens_item(lens_product, lens_measure, zone_b)]))

        sale = sales_service.create_sale(sale_payload([_lens_item(lens_product, lens_measure, zone_a)]))
        assert sale.ot_number == "000001"


# =============================================================================
# PAYMENTS AT CREATION
# =============================================================================

class TestPaymentsAtCreation:

    def test_full_payment_cancels_sale(self, db_session, sale_payload, lens_product, lens_measure, zone_a):
        payload = sale_payload(
            [_lens_item(lens_product, lens_measure, zone_a)],
            payments=[
                {"amount_cents": 150, "method": "efectivo"},
                {"amount_cents": 50, "method": "YAPE", "receipt_ref": "OP-991"},
            ],
        )
        sale = sales_service.create_sale(payload)

        assert sale.balance_cents == 0
        assert sale.percent_paid == 100.0
        assert sale.cancelled_at is not None
        assert [p.method for p in sale.payments] == ["EFECTIVO", "YAPE"]
        assert [p.receipt_ref for p in sale.payments] == [sale.ot_number, "OP-991"]

        pickup = db_session.query(Pickup).filter_by(sale_id=sale.id).one()
        assert pickup.cancelled_amount_cents == 200
        assert len(pickup.advances) == 2

    def test_zero_total_sale_is_cancelled_at_creation(self, db_session, sale_payload, service_product):
        service_product.unit_price_cents = 0
        db_session.commit()

        sale = sales_service.create_sale(sale_payload([{"product_id": service_product.id, "quantity": 1}]))
        assert sale.total_cents == 0
        assert sale.percent_paid == 100.0
        assert sale.cancelled_at is not None


# =============================================================================
# QUERIES, DELIVERY AND DELETION
# =============================================================================

class TestLifecycle:

    @pytest.fixture
    def sale(self, db_session, sale_payload, lens_product, lens_measure, zone_a, simple_product, service_product):
        payload = sale_payload(
            [
                _lens_item(lens_product, lens_measure, zone_a, quantity=2),
                {"product_id": simple_product.id, "quantity": 1},
                {"product_id": service_product.id, "quantity": 1},
            ],
            payments=[{"amount_cents": 1000, "method": "EFECTIVO"}],
        )
        return sales_service.create_sale(payload)

    def test_get_and_list(self, db_session, sale, store):
        assert sales_service.get_sale(sale.id).ot_number == "000001"

        items, total = sales_service.list_sales(store_id=store.id)
        assert total == 1
        assert items[0].id == sale.id

        items, total = sales_service.list_sales(delivery_state="DELIVERED")
        assert total == 0

    def test_get_unknown_sale(self, db_session):
        with pytest.raises(NotFoundError):
            sales_service.get_sale(31337)

    def test_delivery_state_roundtrip(self, db_session, sale):
        delivered = sales_service.update_delivery_state(sale.id, "DELIVERED", received_by="Rosa", delivered_by="Victor")
        assert delivered.delivered_at is not None
        assert delivered.received_by == "Rosa"

        back = sales_service.update_delivery_state(sale.id, "AT_LAB")
        assert back.delivered_at is None
        assert back.received_by is None

    def test_invalid_delivery_state(self, db_session, sale):
        with pytest.raises(ValidationError):
            sales_service.update_delivery_state(sale.id, "SHIPPED")

    def test_update_staff_names(self, db_session, sale):
        updated = sales_service.update_sale(sale.id, {"salesperson": "  Carla Caja ", "optometrist": "Lucia Mendoza"})

        assert updated.salesperson == "Carla Caja"
        assert updated.optometrist == "Lucia Mendoza"
        assert updated.total_cents == sale.total_cents

        cleared = sales_service.update_sale(sale.id, {"optometrist": None})
        assert cleared.optometrist is None
        assert cleared.salesperson == "Carla Caja"

    @pytest.mark.parametrize("field", ["ot_number", "total_cents", "balance_cents", "percent_paid", "payments", "items"])
    def test_update_rejects_locked_fields(self, db_session, sale, field):
        with pytest.raises(ForbiddenFieldError) as exc:
            sales_service.update_sale(sale.id, {field: 1, "salesperson": "Carla Caja"})

        assert exc.value.fields == [field]
        db_session.expire_all()
        assert db_session.get(Sale, sale.id).salesperson == "Victor Ventas"

    @pytest.mark.parametrize("payload", [{}, {"delivery_state": "DELIVERED"}, {"salesperson": 7}, ["salesperson"]])
    def test_update_rejects_malformed(self, db_session, sale, payload):
        with pytest.raises(ValidationError):
            sales_service.update_sale(sale.id, payload)

    def test_update_unknown_sale(self, db_session):
        with pytest.raises(NotFoundError):
            sales_service.update_sale(8080, {"salesperson": "Carla Caja"})

    def test_delete_restores_stock(self, db_session, sale, lens_product, lens_measure, zone_a, simple_product, service_product):
        sale_id = sale.id
        assert _zone_stock(db_session, zone_a.id, measure_id=lens_measure.id) == 3

        result = sales_service.delete_sale(sale_id)

        assert result["ot_number"] == "000001"
        assert len(result["restored"]) == 2
        assert _zone_stock(db_session, zone_a.id, measure_id=lens_measure.id) == 5
        assert db_session.get(Product, lens_product.id).stock_general == 5
        assert db_session.get(Product, simple_product.id).stock_general == 10
        assert db_session.get(Product, service_product.id).stock_general == 0

        assert db_session.get(Sale, sale_id) is None
        assert db_session.query(SaleLine).count() == 0
        assert db_session.query(Payment).count() == 0
        assert db_session.query(Pickup).count() == 0
        assert db_session.query(PickupAdvance).count() == 0

        movements = sales_service.get_sale_movements(sale_id)
        assert sorted(m.movement_type for m in movements) == ["outflow"] * 3 + ["return"] * 3

    def test_delete_recreates_removed_zone(self, db_session, sale, lens_measure, zone_a):
        from optica.services import stock_service
        stock_service.remove_zone_stock("measure", lens_measure.id, zone_a.id)

        sales_service.delete_sale(sale.id)

        row = db_session.query(ZoneStock).filter_by(measure_id=lens_measure.id, zone_id=zone_a.id).one()
        assert row.stock == 2
        assert row.price_cents == 100

    def test_delete_unknown_sale(self, db_session):
        with pytest.raises(NotFoundError):
            sales_service.delete_sale(5150)

    def test_counters_survive_deletion(self, db_session, sale):
        sales_service.delete_sale(sale.id)
        assert db_session.query(Counter).filter_by(name=SALE_OT_COUNTER).one().value == 1
