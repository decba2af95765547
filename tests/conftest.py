"""
Shared fixtures: an aiosqlite file database per test and in-process stock,
guard and ledger state.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from flash_sale.compensation import Compensator
from flash_sale.database import Database
from flash_sale.duplicate_guard import DuplicateGuard
from flash_sale.redis_client import RedisClient
from flash_sale.repository import OrderRepository, SaleRepository
from flash_sale.sale_cache import SaleCache
from flash_sale.settlement_ledger import SettlementLedger
from flash_sale.token_pool import TokenPool

PRODUCT_ID = "6f1c2b8e-3d4a-4f5b-9c6d-7e8f9a0b1c2d"


def sqlite_url(path) -> str:
    return f"sqlite+aiosqlite:///{path}"


class DictRedisClient(RedisClient):
    """RedisClient over a dict. Values go through JSON; TTLs are recorded, not enforced."""

    def __init__(self):
        super().__init__("")
        self.store = {}
        self.ttls = {}

    async def get(self, key):
        value = self.store.get(key)
        return json.loads(value) if value else None

    async def set(self, key, value, ttl=3600):
        self.store[key] = json.dumps(value)
        self.ttls[key] = ttl

    async def delete(self, key):
        self.store.pop(key, None)
        self.ttls.pop(key, None)


@pytest.fixture
async def database(tmp_path):
    db = Database(sqlite_url(tmp_path / "flash_sale.db"))
    await db.connect()
    await db.create_all()
    yield db
    await db.disconnect()


@pytest.fixture
def sale_repository(database):
    return SaleRepository(database)


@pytest.fixture
def order_repository(database):
    return OrderRepository(database)


@pytest.fixture
async def active_sale(sale_repository):
    now = datetime.now(timezone.utc)
    return await sale_repository.create_sale(
        name="Limited Sneaker",
        price_in_cent=12900,
        quantity=0,
        start_date=now - timedelta(hours=1),
        end_date=now + timedelta(hours=1),
        product_id=PRODUCT_ID
    )


@pytest.fixture
def sale_cache(sale_repository):
    # Redis disabled: every read goes to the database
    return SaleCache(RedisClient(""), sale_repository)


@pytest.fixture
def token_pool():
    return TokenPool()


@pytest.fixture
def guard():
    return DuplicateGuard()


@pytest.fixture
def ledger():
    return SettlementLedger()


@pytest.fixture
def compensator(token_pool, guard, ledger):
    return Compensator(token_pool, guard, ledger)
