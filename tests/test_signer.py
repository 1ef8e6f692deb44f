import threading

import josepy
import pytest

from acmekit.client import AcmeProblem, BadNonce, ConfigurationError, NoncePool
from acmekit.client.exceptions import problem_code
from acmekit.client.signer import open_key
from acmekit.models import messages
from acmekit.util import generate_ec_key, generate_rsa_key
from .services import problem


def test_nonce_pool():
    pool = NoncePool()
    assert pool.pop() is None

    pool.push("a")
    pool.push("b")
    pool.push("a")
    pool.push(None)
    pool.push("")
    assert len(pool) == 2

    assert pool.pop() == "a"
    assert pool.pop() == "b"
    assert pool.pop() is None


def test_nonce_pool_hands_out_nonces_once():
    pool = NoncePool()
    for i in range(1000):
        pool.push(str(i))

    popped = []

    def worker():
        while (nonce := pool.pop()) is not None:
            popped.append(nonce)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(popped, key=int) == [str(i) for i in range(1000)]


@pytest.mark.parametrize(
    "key, alg, expected",
    [
        (generate_rsa_key(), None, josepy.jwa.RS256),
        (generate_rsa_key(), "RS512", josepy.jwa.RS512),
        (generate_ec_key(), None, josepy.jwa.ES256),
        (generate_ec_key(key_size=384), None, josepy.jwa.ES384),
        (generate_ec_key(), "es256", josepy.jwa.ES256),
    ],
)
def test_open_key(key, alg, expected):
    jwk, signature_alg = open_key(key, alg)
    assert signature_alg is expected
    assert jwk.public_key().key.public_numbers() == key.public_key().public_numbers()


@pytest.mark.parametrize(
    "key, alg",
    [
        (generate_ec_key(), "RS256"),
        (generate_ec_key(key_size=384), "ES256"),
        (generate_rsa_key(), "ES256"),
        (generate_rsa_key(), "HS256"),
    ],
)
def test_open_key_mismatch(key, alg):
    with pytest.raises(ConfigurationError):
        open_key(key, alg)


def test_problem_code():
    assert problem_code(problem("badNonce")) == "badNonce"
    # not known to the acme package
    assert problem_code(problem("userActionRequired")) == "userActionRequired"
    assert problem_code(problem("userActionRequired")) is not None
    assert problem_code(problem("rateLimited")) == "rateLimited"


@pytest.mark.asyncio
async def test_key_authorization(ca, make_client, account_key):
    client = make_client()
    thumbprint = josepy.b64.b64encode(
        josepy.jwk.JWKEC(key=account_key).public_key().thumbprint()
    ).decode()
    assert client.key_authorization("token") == f"token.{thumbprint}"


@pytest.mark.asyncio
async def test_nonces_are_reused(ca, make_client):
    client = make_client()

    async with client:
        # the nonce of the last response is kept for the next request
        assert len(client._signer.nonces) == 1
        nonce = client._signer.nonces.pop()
        client._signer.nonces.push(nonce)

        await client.order_create(["a.example"])
        assert nonce not in ca.nonces
        assert len(client._signer.nonces) == 1


@pytest.mark.asyncio
async def test_directory_nonce_is_used(ca, make_client):
    client = make_client()

    await client.start()
    try:
        await client.order_create(["a.example"])
    finally:
        await client.close()

    # the directory and every signed response supplied the next nonce
    assert ca.nonce_requests == 0


@pytest.mark.asyncio
async def test_bad_nonce_retried_once(ca, make_client):
    client = make_client()

    async with client:
        ca.reject_nonce["new-order"] = 1
        await client.order_create(["a.example"])

        ca.reject_nonce["new-order"] = 2
        with pytest.raises(BadNonce) as excinfo:
            await client.order_create(["a.example"])

    assert excinfo.value.code == "badNonce"
    assert sum(1 for route, _ in ca.requests if route == "new-order") == 4


@pytest.mark.asyncio
async def test_problem_document(ca, make_client):
    client = make_client()

    async with client:
        with pytest.raises(AcmeProblem) as excinfo:
            await client._signer.signed_request(messages.NewOrder(), client.directory.new_order)

    error = excinfo.value
    assert error.code == "malformed"
    assert error.status == 400
    assert error.url == client.directory.new_order
    assert "HTTP 400" in str(error)
