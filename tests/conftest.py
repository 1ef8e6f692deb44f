import pytest
import pytest_asyncio

from acmekit.client import AcmeClient, RetryPolicy
from acmekit.util import generate_ec_key
from .services import FakeCA

FAST_POLICY = RetryPolicy(interval=0.01, timeout=5.0)


@pytest_asyncio.fixture
async def ca():
    s = FakeCA()
    await s.run()
    yield s
    await s.shutdown()


@pytest.fixture(scope="session")
def account_key():
    return generate_ec_key()


@pytest_asyncio.fixture
async def make_client(ca, account_key):
    """Factory for clients of the fake CA. Clients are closed on teardown."""
    clients = []

    def factory(private_key=None, **kwargs) -> AcmeClient:
        kwargs.setdefault("contact", {"email": "admin@example.org"})
        kwargs.setdefault("directory", ca.directory_url)
        client = AcmeClient(AcmeClient.Config(**kwargs), private_key=private_key or account_key)
        client.ORDER_POLICY = FAST_POLICY
        client.FINALIZE_POLICY = FAST_POLICY
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.close()
