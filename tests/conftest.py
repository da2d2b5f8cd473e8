from datetime import datetime

import pytest
from mongomock_motor import AsyncMongoMockClient

from fitledger.config.database import Collections, db_config
from fitledger.services import booking_store

NOW = datetime(2026, 3, 10, 12, 0, 0)

CBC = {"test_name": "CBC", "price": 500}
LIPID_PANEL = {"test_name": "Lipid Panel", "price": 800}


@pytest.fixture(autouse=True)
def db():
    db_config.use_client(AsyncMongoMockClient(), "fitledger_test")
    yield db_config.database
    db_config.client = None
    db_config.database = None


@pytest.fixture
async def invoice_indexes(db):
    await db_config.ensure_indexes()
    return db


@pytest.fixture
def make_user(db):
    async def _make(user_type="lab-partner", **fields):
        doc = {
            "name": fields.pop("name", f"{user_type} user"),
            "user_type": user_type,
            "commission_rate": None,
            "is_suspended": False,
            "suspension_reason": None,
            "created_at": NOW,
        }
        doc.update(fields)
        result = await db[Collections.USERS].insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc
    return _make


@pytest.fixture
async def lab(make_user):
    return await make_user("lab-partner", name="City Diagnostics", commission_rate=10)


@pytest.fixture
async def enthusiast(make_user):
    return await make_user("fitness-enthusiast", name="Asha")


@pytest.fixture
def make_booking(lab, enthusiast):
    async def _make(tests=None, partner=None, user=None, now=NOW):
        user = user or enthusiast
        return await booking_store.create_booking({
            "fitness_enthusiast_id": str(user["_id"]),
            "fitness_enthusiast_name": user["name"],
            "lab_partner_id": str((partner or lab)["_id"]),
            "selected_tests": tests if tests is not None else [dict(CBC), dict(LIPID_PANEL)],
            "booking_date": datetime(2026, 3, 12, 9, 0),
            "time_slot": "9:00 AM - 10:00 AM",
        }, now=now)
    return _make
