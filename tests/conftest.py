"""
Shared fixtures: an in-memory database, a test client and small factories
for the fleet (roles, profiles, vehicles, inspections).
"""
import os
from types import SimpleNamespace

import pytest

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import (  # noqa: E402
    app as flask_app, db, Role, Profile, VehicleCategory, Vehicle,
    VehicleInspection, InspectionItem,
)


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True, BULK_PDF_CHUNK_SIZE=80, BULK_PDF_TIMEOUT=0)
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def fleet(app):
    """Manager and driver accounts plus one truck and one van."""
    manager_role = Role(name='manager', is_manager_admin=True)
    driver_role = Role(name='driver', is_manager_admin=False)
    truck, van = VehicleCategory(name='Truck'), VehicleCategory(name='Van')

    manager = Profile(full_name='Morgan Manager', email='manager@example.com', role=manager_role)
    driver = Profile(full_name='Dana Driver', email='driver@example.com', role=driver_role)
    other = Profile(full_name='Sam Other', email='other@example.com', role=driver_role)
    for p in (manager, driver, other):
        p.set_password('secret')

    lorry = Vehicle(reg_number='AB12CDE', vehicle_type='truck', category=truck)
    transit = Vehicle(reg_number='XY34ZFG', vehicle_type='van', category=van)

    db.session.add_all([manager_role, driver_role, truck, van, manager, driver, other, lorry, transit])
    db.session.commit()
    return SimpleNamespace(manager=manager, driver=driver, other=other, lorry=lorry, transit=transit)


@pytest.fixture
def add_inspection(fleet):
    """Factory: add_inspection(week_ending, vehicle=None, status='submitted', items=3, defects=())."""
    def _add(week_ending, vehicle=None, status='submitted', items=3, driver=None, defects=()):
        insp = VehicleInspection(
            vehicle=vehicle or fleet.lorry,
            profile=driver or fleet.driver,
            week_ending=week_ending,
            mileage=12345,
            status=status,
        )
        for n in range(1, items + 1):
            insp.items.append(InspectionItem(item_number=n, day_of_week=1,
                                             item_description=f'Item {n}', status='ok'))
        # defects: (item_number, day_of_week, comment)
        for number, day, comment in defects:
            insp.items.append(InspectionItem(item_number=number, day_of_week=day,
                                             item_description=f'Item {number}', status='attention',
                                             comments=comment))
        db.session.add(insp)
        db.session.commit()
        return insp
    return _add


@pytest.fixture
def login(client):
    def _login(profile):
        with client.session_transaction() as s:
            s['profile_id'] = profile.id
    return _login
