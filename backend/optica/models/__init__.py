from .tenancy import Organization, Store, Zone
from .customers import Patient
from .auth import User, SessionToken
from .catalog import Product, Variant, Measure, ZoneStock
from .sales import Sale, SaleLine, Payment
from .pickups import Pickup, PickupLine, PickupAdvance
from .documents import Movement, Counter

__all__ = [
    'Organization', 'Store', 'Zone',
    'Patient',
    'User', 'SessionToken',
    'Product', 'Variant', 'Measure', 'ZoneStock',
    'Sale', 'SaleLine', 'Payment',
    'Pickup', 'PickupLine', 'PickupAdvance',
    'Movement', 'Counter',
]
