import asyncio

import pytest
from aiohttp import web
from cryptography import x509

import acmekit.util
from acmekit.client import (
    AcmeClient,
    AccountDoesNotExist,
    AuthorizationInvalid,
    ChallengeInvalid,
    ConfigurationError,
    NoUsableChallenge,
    ObtainError,
    PropagationTimeout,
    ProviderError,
    RateLimited,
    TermsOfServiceRequired,
)
from acmekit.models import ChallengeStatus, ChallengeType, OrderStatus
from acmekit.util import generate_ec_key, generate_rsa_key
from .services import FakeCA, RecordingSolver


def finalize_requests(ca: FakeCA) -> int:
    return sum(1 for route, _ in ca.requests if route == "finalize")


@pytest.mark.asyncio
async def test_single_domain_http01(ca, make_client):
    """A single domain is validated via http-01 and a PEM chain is returned."""
    solver = RecordingSolver([ChallengeType.HTTP_01])
    client = make_client()
    client.register_challenge_solver(solver)

    async with client:
        resource = await client.obtain(["a.example"])

    certificates = acmekit.util.load_pem_certificates(resource.certificate)
    assert len(certificates) == 2
    assert acmekit.util.names_of_certificate(certificates[0]) == ["a.example"]
    assert certificates[1].subject == ca.ca_cert.subject
    assert resource.issuer_certificate.strip() == acmekit.util.certificate_to_pem(ca.ca_cert).strip()
    assert resource.private_key is not None

    order = next(iter(ca.orders.values()))
    assert order["status"] == "valid"

    assert solver.calls("present", "a.example") == 1
    assert solver.calls("cleanup", "a.example") == 1
    assert solver.presented["a.example"] == client.key_authorization(
        ca.posted_challenges("a.example")[0]["token"]
    )


@pytest.mark.asyncio
async def test_failing_provider_prevents_issuance(ca, make_client):
    """A provider failure for one domain is reported for that domain only and nothing is issued."""
    ca.challenge_types = ["dns-01"]
    solver = RecordingSolver([ChallengeType.DNS_01], fail_present=["b.example"])
    client = make_client()
    client.register_challenge_solver(solver)

    async with client:
        with pytest.raises(ObtainError) as excinfo:
            await client.obtain(["a.example", "b.example"])

    failures = excinfo.value.failures
    assert list(failures) == ["b.example"]
    assert isinstance(failures["b.example"], ProviderError)
    assert "b.example" in str(excinfo.value)

    assert finalize_requests(ca) == 0
    assert not ca.certificates

    statuses = {authz["name"]: authz["status"] for authz in ca.authorizations.values()}
    assert statuses == {"a.example": "valid", "b.example": "deactivated"}

    # cleanup runs even though present failed
    assert solver.calls("cleanup", "b.example") == 1
    assert solver.calls("cleanup", "a.example") == 1


@pytest.mark.asyncio
async def test_bad_nonce_on_finalize_is_retried_once(ca, make_client):
    ca.reject_nonce["finalize"] = 1
    client = make_client()
    client.register_challenge_solver(RecordingSolver())

    async with client:
        resource = await client.obtain(["a.example"])

    assert resource.certificate
    assert finalize_requests(ca) == 2


@pytest.mark.asyncio
async def test_validation_timeout(ca, make_client):
    """Validation that never concludes yields a timeout distinct from an invalid challenge."""
    ca.stuck_identifiers.add("a.example")
    solver = RecordingSolver(timeout=0.3)
    client = make_client()
    client.register_challenge_solver(solver)

    async with client:
        with pytest.raises(ObtainError) as excinfo:
            await client.obtain(["a.example"])

    error = excinfo.value.failures["a.example"]
    assert isinstance(error, PropagationTimeout)
    assert not isinstance(error, ChallengeInvalid)
    assert error.timeout == 0.3
    assert solver.calls("cleanup", "a.example") == 1
    assert finalize_requests(ca) == 0


@pytest.mark.asyncio
async def test_invalid_challenge(ca, make_client):
    ca.invalid_identifiers.add("a.example")
    solver = RecordingSolver()
    client = make_client()
    client.register_challenge_solver(solver)

    async with client:
        with pytest.raises(ObtainError) as excinfo:
            await client.obtain(["a.example"])

    error = excinfo.value.failures["a.example"]
    assert isinstance(error, ChallengeInvalid)
    assert error.error.code == "incorrectResponse"
    assert solver.calls("cleanup", "a.example") == 1


@pytest.mark.asyncio
async def test_valid_authorizations_are_skipped(ca, make_client):
    ca.valid_identifiers.add("a.example")
    solver = RecordingSolver()
    client = make_client()
    client.register_challenge_solver(solver)

    async with client:
        await client.obtain(["a.example", "b.example"])

    assert solver.calls("present", "a.example") == 0
    assert solver.calls("present", "b.example") == 1
    assert ca.posted_challenges("a.example") == []


@pytest.mark.asyncio
async def test_one_challenge_per_authorization(ca, make_client):
    ca.challenge_types = ["dns-01", "http-01", "tls-alpn-01"]
    http = RecordingSolver([ChallengeType.HTTP_01])
    dns = RecordingSolver([ChallengeType.DNS_01])
    client = make_client()
    client.register_challenge_solver(dns)
    client.register_challenge_solver(http)

    async with client:
        await client.obtain(["a.example", "b.example"])

    for name in ("a.example", "b.example"):
        posted = ca.posted_challenges(name)
        assert len(posted) == 1
        assert posted[0]["type"] == "http-01"
        assert posted[0]["posted"] == 1

    assert dns.events == []


@pytest.mark.asyncio
async def test_no_usable_challenge_fails_before_presenting(ca, make_client):
    ca.challenge_types_for["b.example"] = ["tls-alpn-01"]
    solver = RecordingSolver()
    client = make_client()
    client.register_challenge_solver(solver)

    async with client:
        with pytest.raises(ObtainError) as excinfo:
            await client.obtain(["a.example", "b.example"])

    error = excinfo.value.failures["b.example"]
    assert isinstance(error, NoUsableChallenge)
    assert isinstance(error, ConfigurationError)
    assert error.offered == ["tls-alpn-01"]
    assert solver.events == []


@pytest.mark.asyncio
async def test_failed_authorization_is_reported(ca, make_client):
    client = make_client()
    client.register_challenge_solver(RecordingSolver())

    async with client:
        order = await client.order_create(["a.example"])
        for authz in ca.authorizations.values():
            authz["status"] = "expired"

        with pytest.raises(ObtainError) as excinfo:
            await client.authorizations_complete(order)

    error = excinfo.value.failures["a.example"]
    assert isinstance(error, AuthorizationInvalid)
    assert error.status.value == "expired"


@pytest.mark.asyncio
async def test_cleanup_errors_are_not_fatal(ca, make_client):
    solver = RecordingSolver(fail_cleanup=True)
    client = make_client()
    client.register_challenge_solver(solver)

    async with client:
        resource = await client.obtain(["a.example"])

    assert resource.certificate
    assert solver.calls("cleanup") == 1


@pytest.mark.asyncio
async def test_wildcard_via_dns01(ca, make_client):
    ca.challenge_types = ["dns-01"]
    solver = RecordingSolver([ChallengeType.DNS_01])
    client = make_client()
    client.register_challenge_solver(solver)

    async with client:
        resource = await client.obtain(["*.example.org", "example.org"])

    assert set(solver.presented) == {"*.example.org", "example.org"}
    assert resource.domain == "*.example.org"
    assert set(resource.names) == {"*.example.org", "example.org"}


@pytest.mark.asyncio
async def test_order_reentry(ca, make_client):
    """Solving and finalizing an order that already progressed does not redo any step."""
    solver = RecordingSolver()
    client = make_client()
    client.register_challenge_solver(solver)

    async with client:
        order = await client.order_create(["a.example"])
        ready = await client.solve(order)
        assert ready.status == OrderStatus.READY

        again = await client.solve(ready)
        assert again.status == OrderStatus.READY
        assert solver.calls("present") == 1

        key = generate_ec_key()
        csr = acmekit.util.generate_csr("a.example", key, names=["a.example"])
        valid = await client.order_finalize(again, csr)
        assert valid.status == OrderStatus.VALID

        assert await client.order_finalize(valid, csr) is valid
        assert finalize_requests(ca) == 1

        pem = await client.certificate_get(valid)
        assert acmekit.util.load_pem_certificates(pem)


@pytest.mark.asyncio
async def test_obtain_for_csr(ca, make_client):
    ca.send_chain = True
    client = make_client()
    client.register_challenge_solver(RecordingSolver())
    key = generate_rsa_key()
    csr = acmekit.util.generate_csr("a.example", key, names=["a.example", "b.example"])

    async with client:
        resource = await client.obtain_for_csr(csr)

    assert resource.private_key is None
    assert resource.names == ["a.example", "b.example"]
    assert len(acmekit.util.load_pem_certificates(resource.certificate)) == 2
    assert resource.issuer_certificate is not None


@pytest.mark.asyncio
async def test_renew_reuses_csr(ca, make_client):
    client = make_client()
    client.register_challenge_solver(RecordingSolver())

    async with client:
        first = await client.obtain(["a.example", "b.example"])
        renewed = await client.renew(first)

    assert renewed.csr == first.csr
    assert renewed.private_key == first.private_key
    assert renewed.cert_url != first.cert_url
    assert renewed.names == first.names


@pytest.mark.asyncio
async def test_renew_without_csr_keeps_key(ca, make_client):
    client = make_client()
    client.register_challenge_solver(RecordingSolver())

    async with client:
        first = await client.obtain(["a.example"])
        first.csr = None
        renewed = await client.renew(first, must_staple=True)

    assert renewed.private_key == first.private_key
    csr = x509.load_pem_x509_csr(renewed.csr)
    assert csr.extensions.get_extension_for_class(x509.TLSFeature)
    assert acmekit.util.names_of(csr) == ["a.example"]


@pytest.mark.asyncio
async def test_revoke(ca, make_client):
    client = make_client()
    client.register_challenge_solver(RecordingSolver())

    async with client:
        resource = await client.obtain(["a.example"])
        certificate = acmekit.util.load_pem_certificates(resource.certificate)[0]
        assert await client.certificate_revoke(certificate)

    assert [c.serial_number for c in ca.revoked] == [certificate.serial_number]


@pytest.mark.asyncio
async def test_account_is_reused(ca, make_client, account_key):
    first = make_client()
    async with first:
        kid = first.account_uri

    second = make_client(private_key=account_key)
    async with second:
        assert second.account_uri == kid

    assert len(ca.accounts) == 1


@pytest.mark.asyncio
async def test_account_lookup_unknown_key(ca, make_client):
    client = make_client()
    async with client:
        ca.accounts.clear()

        with pytest.raises(AccountDoesNotExist) as excinfo:
            await client.account_lookup()

    assert excinfo.value.code == "accountDoesNotExist"
    assert excinfo.value.status == 400


@pytest.mark.asyncio
async def test_account_update_and_deactivate(ca, make_client):
    client = make_client()
    async with client:
        account = await client.account_update(contact=("mailto:new@example.org",))
        assert account.contact == ("mailto:new@example.org",)

        account = await client.account_deactivate()
        assert account.status.value == "deactivated"

    assert next(iter(ca.accounts.values()))["status"] == "deactivated"


@pytest.mark.asyncio
async def test_terms_of_service_must_be_agreed(ca, make_client):
    ca.terms_of_service = "https://ca.example/tos"

    client = make_client()
    with pytest.raises(TermsOfServiceRequired) as excinfo:
        await client.start()
    assert excinfo.value.terms_of_service == "https://ca.example/tos"
    assert not ca.accounts

    agreed = make_client(agree_tos=True)
    async with agreed:
        assert agreed.account.terms_of_service_agreed


@pytest.mark.asyncio
async def test_terms_of_service_changed(ca, make_client):
    ca.terms_of_service = "https://ca.example/tos-v2"
    ca.require_tos_reagreement = True

    client = make_client(agree_tos=True)
    with pytest.raises(TermsOfServiceRequired) as excinfo:
        await client.start()
    assert excinfo.value.terms_of_service == "https://ca.example/tos-v2"
    assert excinfo.value.error is not None


@pytest.mark.asyncio
async def test_external_account_binding(ca, make_client):
    ca.external_account_required = True
    ca.eab_keys["kid-1"] = "c2VjcmV0LWtleS1mb3ItdGVzdGluZw"

    client = make_client()
    with pytest.raises(ConfigurationError):
        await client.start()

    bound = make_client(eab_kid="kid-1", eab_hmac_key="c2VjcmV0LWtleS1mb3ItdGVzdGluZw")
    async with bound:
        assert bound.account.status.value == "valid"


@pytest.mark.asyncio
async def test_directory_missing_urls(make_client):
    async def directory(request):
        return web.json_response({"newNonce": f"{request.url.origin()}/new-nonce"})

    app = web.Application()
    app.add_routes([web.get("/directory", directory)])
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()

    try:
        client = make_client(directory=f"http://127.0.0.1:{runner.addresses[0][1]}/directory")
        with pytest.raises(ConfigurationError) as excinfo:
            await client.start()
        assert "newAccount" in str(excinfo.value)
        assert "newOrder" in str(excinfo.value)
    finally:
        await runner.cleanup()


@pytest.mark.asyncio
async def test_missing_directory_url(make_client):
    client = make_client(directory="")
    with pytest.raises(ConfigurationError):
        await client.start()


def test_account_key_algorithm_mismatch():
    with pytest.raises(ConfigurationError):
        AcmeClient(
            AcmeClient.Config(directory="https://ca.example/directory", alg="RS256"),
            private_key=generate_ec_key(),
        )


def test_missing_account_key():
    with pytest.raises(ConfigurationError):
        AcmeClient(AcmeClient.Config(directory="https://ca.example/directory"))


@pytest.mark.asyncio
async def test_certificate_key_type(ca, make_client):
    client = make_client(key_type="rsa2048")
    client.register_challenge_solver(RecordingSolver())

    async with client:
        resource = await client.obtain(["a.example"], must_staple=True)

    key = acmekit.util.load_private_key(resource.private_key)
    assert key.key_size == 2048
    csr = x509.load_pem_x509_csr(resource.csr)
    assert csr.extensions.get_extension_for_class(x509.TLSFeature)


@pytest.mark.asyncio
async def test_rate_limited_is_not_retried(ca, make_client):
    ca.rate_limit_retry_after = 120
    client = make_client()
    client.register_challenge_solver(RecordingSolver())

    async with client:
        with pytest.raises(RateLimited) as excinfo:
            await client.obtain(["a.example"])

    assert excinfo.value.retry_after == 120
    assert excinfo.value.status == 429
    assert sum(1 for route, _ in ca.requests if route == "new-order") == 1


@pytest.mark.asyncio
async def test_deadline_still_cleans_up(ca, make_client):
    """Cancelling the issuance while a challenge is being presented still cleans it up."""
    solver = RecordingSolver(delay=5)
    client = make_client()
    client.register_challenge_solver(solver)

    async with client:
        with pytest.raises(asyncio.TimeoutError):
            await client.obtain(["a.example"], timeout=0.5)

    assert solver.events == [("present", "a.example"), ("cleanup", "a.example")]
    assert finalize_requests(ca) == 0


@pytest.mark.asyncio
async def test_challenge_get_does_not_trigger_validation(ca, make_client):
    client = make_client()

    async with client:
        order = await client.order_create(["a.example"])
        (authorization,) = await client.authorizations_get(order)
        url = authorization.challenges[0].url

        challenge, _ = await client.challenge_get(url)
        assert challenge.status == ChallengeStatus.PENDING
        assert ca.posted_challenges("a.example") == []

        await client.challenge_validate(url)
        challenge, _ = await client.challenge_get(url)

    assert challenge.status == ChallengeStatus.PROCESSING
    assert challenge.url == url
    assert len(ca.posted_challenges("a.example")) == 1
