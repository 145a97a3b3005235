from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import utcnow
from main import create_app
from schemas import Actor, PlantLot, PlantSpecies, User

TEST_SETTINGS = Settings(
    jwt_secret="test-secret",
    bcrypt_rounds=4,
    public_base_url="http://plantation.test",
    log_level="WARNING",
)


@pytest.fixture
def settings():
    return TEST_SETTINGS


@pytest.fixture
def db():
    return mongomock.MongoClient()["plantation_test"]


@pytest.fixture
def app(settings, db):
    return create_app(settings=settings, database=db)


@pytest.fixture
def client(app):
    # Entering the client runs the lifespan, which wires the services
    with TestClient(app) as c:
        yield c


@pytest.fixture
def catalog(client, app):
    return app.state.catalog


@pytest.fixture
def tracker(client, app):
    return app.state.tracker


@pytest.fixture
def qr_generator(client, app):
    return app.state.qr


@pytest.fixture
def accounts(client, app):
    """role -> (Actor, token) for one registered user per role"""
    out = {}
    for role in ("manager", "field", "analyst"):
        user, token = app.state.users.register(User(
            name=f"Test {role.title()}",
            email=f"{role}@test.com",
            password="password123",
            role=role,
        ))
        out[role] = (Actor(id=str(user["_id"]), role=role, name=user["name"]), token)
    return out


@pytest.fixture
def manager(accounts):
    return accounts["manager"][0]


@pytest.fixture
def field_worker(accounts):
    return accounts["field"][0]


@pytest.fixture
def auth_headers(accounts):
    def headers(role="manager"):
        return {"Authorization": f"Bearer {accounts[role][1]}"}
    return headers


@pytest.fixture
def species(catalog, manager):
    return catalog.register(PlantSpecies(
        name="Mango", code="MNG", min_height=50, harvest_days=90, category="tree",
    ), manager)


@pytest.fixture
def make_lot(tracker, species, manager):
    def make(lot_id="LOT-001", days_ago=10, height=20.0, diameter=2.0, zone="North",
             location_id="N-01", species_doc=None, **extra):
        fields = PlantLot(
            lot_id=lot_id,
            species_id=str((species_doc or species)["_id"]),
            planted_date=utcnow() - timedelta(days=days_ago),
            zone=zone,
            location_id=location_id,
            current_height=height,
            diameter=diameter,
            **extra,
        )
        return tracker.create_lot(fields, manager)
    return make
