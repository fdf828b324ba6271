import fakeredis
import pytest

from keyshop.model.inventory import InventoryService, Reconciler
from keyshop.model.orders import OrderService, OrderStore
from keyshop.notify import MockNotifier

PRODUCTS = ("shadow-weekly", "shadow-monthly", "shadow-lifetime")

SCENARIO_SOURCE = """\
# Shadow.CC License Keys
# Format: KEY|PRODUCT_ID

AAA111|shadow-weekly
BBB222|shadow-monthly
"""


@pytest.fixture
def server():
    return fakeredis.FakeServer()


@pytest.fixture
async def r(server):
    client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def keys_file(tmp_path):
    path = tmp_path / "keys.txt"
    path.write_text(SCENARIO_SOURCE)
    return path


@pytest.fixture
def reconciler(r, keys_file):
    return Reconciler(r, source_path=str(keys_file), product_ids=PRODUCTS)


@pytest.fixture
def inv(r, reconciler):
    return InventoryService(r, reconciler)


@pytest.fixture
def notifier():
    return MockNotifier(operator_email="ops@example.com")


@pytest.fixture
def order_store(r):
    return OrderStore(r, pending_ttl=7 * 24 * 3600,
                      confirmed_ttl=30 * 24 * 3600)


@pytest.fixture
def svc(order_store, notifier):
    return OrderService(order_store, notifier,
                        base_url="https://shop.example.com/")


@pytest.fixture
def order_payload():
    return {
        "name": "Ada",
        "email": "ada@example.com",
        "discord": "ada#0001",
        "details": "Please set it up on two machines.",
        "serviceName": "Shadow Setup",
        "tierName": "Premium",
        "tierPrice": "$25",
    }
