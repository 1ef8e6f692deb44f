import datetime
import email.utils
import stat

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, rsa

import acmekit.util
from .services import generate_ca, sign_csr


@pytest.mark.parametrize(
    "key_type, cls, size",
    [("rsa2048", rsa.RSAPrivateKey, 2048), ("ec256", ec.EllipticCurvePrivateKey, 256), ("EC384", ec.EllipticCurvePrivateKey, 384)],
)
def test_generate_private_key(tmp_path, key_type, cls, size):
    path = tmp_path / "key.pem"
    key = acmekit.util.generate_private_key(key_type, path)

    assert isinstance(key, cls)
    assert key.key_size == size
    assert stat.S_IMODE(path.stat().st_mode) == acmekit.util.KEY_FILE_MODE

    loaded = acmekit.util.load_private_key(path.read_bytes())
    assert loaded.private_numbers() == key.private_numbers()


def test_generate_private_key_unknown_type():
    with pytest.raises(ValueError):
        acmekit.util.generate_private_key("dsa1024")


def test_generate_csr(tmp_path):
    key = acmekit.util.generate_ec_key()
    csr = acmekit.util.generate_csr(
        "a.example", key, tmp_path / "csr.pem", names=["a.example", "B.example", "192.0.2.1"], must_staple=True
    )

    assert (tmp_path / "csr.pem").exists()
    assert acmekit.util.names_of(csr) == ["a.example", "B.example", "192.0.2.1"]
    assert acmekit.util.names_of(csr, lower=True) == ["a.example", "b.example", "192.0.2.1"]
    assert csr.extensions.get_extension_for_class(x509.TLSFeature)


def test_names_of_certificate():
    ca_key, ca_cert = generate_ca()
    key = acmekit.util.generate_ec_key()
    cert = sign_csr(acmekit.util.generate_csr("b.example", key, names=["a.example", "b.example"]), ca_key, ca_cert)

    assert acmekit.util.names_of_certificate(cert) == ["b.example", "a.example"]


def test_pem_chain_keeps_order():
    _, first = generate_ca("first")
    _, second = generate_ca("second")
    pem = acmekit.util.certificate_to_pem(first) + acmekit.util.certificate_to_pem(second)

    certificates = acmekit.util.load_pem_certificates(pem)
    assert [c.subject for c in certificates] == [first.subject, second.subject]


@pytest.mark.parametrize("pem", ["", "garbage", "-----BEGIN CERTIFICATE-----\nAAAA\n-----END CERTIFICATE-----\n"])
def test_load_pem_certificates_malformed(pem):
    with pytest.raises(ValueError):
        acmekit.util.load_pem_certificates(pem)


def test_sanitize_domains():
    assert acmekit.util.sanitize_domains(["a.example", "bücher.example", "192.0.2.1", "a.example", "*.example"]) == [
        "a.example",
        "xn--bcher-kva.example",
        "192.0.2.1",
        "*.example",
    ]


def test_identifiers_from_names():
    assert acmekit.util.identifiers_from_names(["a.example", "2001:db8::1"]) == [
        {"type": "dns", "value": "a.example"},
        {"type": "ip", "value": "2001:db8::1"},
    ]


def test_parse_retry_after():
    assert acmekit.util.parse_retry_after(None) is None
    assert acmekit.util.parse_retry_after("") is None
    assert acmekit.util.parse_retry_after("120") == 120.0
    assert acmekit.util.parse_retry_after("soon") is None

    when = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=60)
    delay = acmekit.util.parse_retry_after(email.utils.format_datetime(when, usegmt=True))
    assert 50 < delay <= 60

    past = datetime.datetime(2000, 1, 1, tzinfo=datetime.timezone.utc)
    assert acmekit.util.parse_retry_after(email.utils.format_datetime(past, usegmt=True)) == 0.0
