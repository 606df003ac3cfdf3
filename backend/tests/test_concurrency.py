"""
Concurrent sale tests against a file-backed SQLite database.

Verifies:
- Concurrent sales get distinct, gap-free OT numbers
- Two sales racing for the same zone never drive stock negative
"""

import threading

import pytest

from optica import create_app
from optica.extensions import db
from optica.models import Measure, Movement, Organization, Patient, Product, Sale, Store, Zone, ZoneStock
from optica.services import sales_service


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'concurrency.db'}",
        "SALE_RETRY_ATTEMPTS": 10,
        "SALE_RETRY_BACKOFF": 0.01,
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def seeded(file_app):
    """One store, one patient and a lens measure with 5 units in a single zone."""
    with file_app.app_context():
        org = Organization(name="Optica Concurrente", code="CONC", is_active=True)
        db.session.add(org)
        db.session.flush()
        store = Store(org_id=org.id, name="Tienda Concurrente", code="T01")
        db.session.add(store)
        db.session.flush()
        zone = Zone(store_id=store.id, code="Z1", name="Vitrina")
        patient = Patient(org_id=org.id, first_name="Luis", last_name="Mamani", dni="10101010")
        product = Product(org_id=org.id, code="LEN-CONC", name="Luna Concurrente", stock_general=5)
        db.session.add_all([zone, patient, product])
        db.session.flush()
        measure = Measure(product_id=product.id, code="M-000-000", sphere=0.0, cylinder=0.0)
        measure.zone_stocks.append(ZoneStock(zone_id=zone.id, stock=5, price_cents=100))
        db.session.add(measure)
        db.session.commit()

        ids = {
            "store_id": store.id,
            "patient_id": patient.id,
            "zone_id": zone.id,
            "product_id": product.id,
            "measure_id": measure.id,
        }
        db.session.remove()
    return ids


def _payload(ids, quantity):
    return {
        "patient_id": ids["patient_id"],
        "store_id": ids["store_id"],
        "items": [{
            "product_id": ids["product_id"],
            "measure_id": ids["measure_id"],
            "zone_id": ids["zone_id"],
            "quantity": quantity,
        }],
    }


def _run_concurrently(app, payloads):
    created = []
    errors = []
    lock = threading.Lock()
    barrier = threading.Barrier(len(payloads))

    def worker(payload):
        with app.app_context():
            try:
                barrier.wait()
                sale = sales_service.create_sale(payload)
                with lock:
                    created.append(sale.ot_number)
            except Exception as exc:
                with lock:
                    errors.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(p,)) for p in payloads]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return created, errors


def test_ot_numbers_are_distinct(file_app, seeded):
    created, errors = _run_concurrently(file_app, [_payload(seeded, 1) for _ in range(8)])

    assert not errors
    assert sorted(created) == [f"{n:06d}" for n in range(1, 9)]


def test_racing_sales_never_go_negative(file_app, seeded):
    created, errors = _run_concurrently(file_app, [_payload(seeded, 3), _payload(seeded, 3)])

    assert not errors
    assert len(created) == 2

    with file_app.app_context():
        row = db.session.query(ZoneStock).filter_by(measure_id=seeded["measure_id"]).one()
        assert row.stock == 0
        assert db.session.get(Product, seeded["product_id"]).stock_general == 0
        assert db.session.query(Sale).count() == 2
        assert db.session.query(Movement).count() == 2
        db.session.remove()
