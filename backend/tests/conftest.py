"""
Pytest fixtures for optica backend tests.

Provides test database setup, a small optical catalog, staff users with
bearer tokens, and the Flask test client.
"""

import pytest
from optica import create_app
from optica.extensions import db
from optica.models import (
    Organization,
    Store,
    Zone,
    Patient,
    User,
    Product,
    Variant,
    Measure,
    ZoneStock,
)
from optica.models.auth import ROLE_ADMIN, ROLE_CASHIER, ROLE_INVENTORY, ROLE_SELLER, ROLE_TECHNICIAN
from optica.services import session_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SALE_RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


# =============================================================================
# TENANCY
# =============================================================================

@pytest.fixture(scope='function')
def org(db_session):
    org = Organization(name="Optica Vision SAC", code="VISION", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def store(db_session, org):
    store = Store(org_id=org.id, name="Tienda Centro", code="T01")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def zone_a(db_session, store):
    zone = Zone(store_id=store.id, code="Z1", name="Vitrina")
    db_session.add(zone)
    db_session.commit()
    return zone


@pytest.fixture(scope='function')
def zone_b(db_session, store):
    zone = Zone(store_id=store.id, code="Z2", name="Almacen")
    db_session.add(zone)
    db_session.commit()
    return zone


@pytest.fixture(scope='function')
def patient(db_session, org):
    patient = Patient(org_id=org.id, first_name="Rosa", last_name="Quispe", dni="45678912")
    db_session.add(patient)
    db_session.commit()
    return patient


# =============================================================================
# USERS
# =============================================================================

def _make_user(db_session, org, store, username, name, role):
    user = User(org_id=org.id, store_id=store.id, username=username, name=name, role=role, is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def admin_user(db_session, org, store):
    return _make_user(db_session, org, store, "admin", "Ana Admin", ROLE_ADMIN)


@pytest.fixture(scope='function')
def seller_user(db_session, org, store):
    return _make_user(db_session, org, store, "vendedor1", "Victor Ventas", ROLE_SELLER)


@pytest.fixture(scope='function')
def cashier_user(db_session, org, store):
    return _make_user(db_session, org, store, "caja1", "Carla Caja", ROLE_CASHIER)


@pytest.fixture(scope='function')
def technician_user(db_session, org, store):
    return _make_user(db_session, org, store, "tecnico1", "Tomas Taller", ROLE_TECHNICIAN)


@pytest.fixture(scope='function')
def inventory_user(db_session, org, store):
    return _make_user(db_session, org, store, "almacen1", "Ivan Inventario", ROLE_INVENTORY)


def _headers_for(user) -> dict:
    _, token = session_service.create_session(user.id)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(admin_user):
    return _headers_for(admin_user)


@pytest.fixture(scope='function')
def seller_headers(seller_user):
    return _headers_for(seller_user)


@pytest.fixture(scope='function')
def cashier_headers(cashier_user):
    return _headers_for(cashier_user)


@pytest.fixture(scope='function')
def technician_headers(technician_user):
    return _headers_for(technician_user)


@pytest.fixture(scope='function')
def inventory_headers(inventory_user):
    return _headers_for(inventory_user)


# =============================================================================
# CATALOG
# =============================================================================

@pytest.fixture(scope='function')
def lens_product(db_session, org, zone_a):
    """Lens with one measure stocked only in zone A: 5 units at 100 cents."""
    product = Product(org_id=org.id, code="LEN-001", name="Luna Monofocal", unit_price_cents=9999)
    db_session.add(product)
    db_session.flush()

    measure = Measure(product_id=product.id, code="M-150-050", sphere=-1.5, cylinder=-0.5)
    measure.zone_stocks.append(ZoneStock(zone_id=zone_a.id, stock=5, price_cents=100))
    db_session.add(measure)
    product.stock_general = 5
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def lens_measure(lens_product):
    return lens_product.measures[0]


@pytest.fixture(scope='function')
def frame_product(db_session, org, zone_a, zone_b):
    """Frame with one variant stocked in two zones at different prices."""
    product = Product(org_id=org.id, code="MON-001", name="Montura Acetato", brand="Ray-Ban")
    db_session.add(product)
    db_session.flush()

    variant = Variant(product_id=product.id, code="NEG-52", color="Negro", size="52")
    variant.zone_stocks.append(ZoneStock(zone_id=zone_a.id, stock=4, price_cents=25000))
    variant.zone_stocks.append(ZoneStock(zone_id=zone_b.id, stock=2, price_cents=26000))
    db_session.add(variant)
    product.stock_general = 6
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def frame_variant(frame_product):
    return frame_product.variants[0]


@pytest.fixture(scope='function')
def simple_product(db_session, org):
    """Accessory counted on the product itself."""
    product = Product(org_id=org.id, code="ACC-001", name="Estuche", unit_price_cents=1500, stock_general=10)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def service_product(db_session, org):
    """Nothing to count: no variants, no measures, zero stock."""
    product = Product(org_id=org.id, code="SRV-001", name="Examen Visual", unit_price_cents=3000, stock_general=0)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def sale_payload(patient, store):
    """Builder for POST /api/sales bodies against the default patient and store."""
    def _build(items, **extra) -> dict:
        payload = {
            "patient_id": patient.id,
            "store_id": store.id,
            "items": items,
            "salesperson": "Victor Ventas",
        }
        payload.update(extra)
        return payload
    return _build
