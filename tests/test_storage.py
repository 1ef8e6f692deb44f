import stat

import pytest
from cryptography.hazmat.primitives import serialization

import acmekit.util
from acmekit.client import CertificateResource
from acmekit.models import Account, AccountStatus
from acmekit.storage import AccountStorage, CertificateStorage, FileSystemStorage
from .services import generate_ca, sign_csr

DIRECTORY = "https://acme.example:14000/directory"


@pytest.fixture
def storage(tmp_path):
    return FileSystemStorage(tmp_path / "storage")


def test_filesystem_storage(storage):
    storage.write("a/b/c.txt", b"data")
    assert storage.exists("a/b/c.txt")
    assert storage.read("a/b/c.txt") == b"data"

    storage.write("a/secret", b"key", private=True)
    assert stat.S_IMODE((storage.root / "a" / "secret").stat().st_mode) == acmekit.util.KEY_FILE_MODE

    with pytest.raises(FileNotFoundError):
        storage.read("missing")


@pytest.mark.parametrize("path", ["/etc/passwd", "../outside", "a/../../outside"])
def test_filesystem_storage_rejects_escaping_paths(storage, path):
    with pytest.raises(ValueError):
        storage.write(path, b"x")


def test_account_storage(storage):
    accounts = AccountStorage(storage)
    assert accounts.load(DIRECTORY, "admin@example.org") is None

    account = Account(kid="https://acme.example:14000/acct/1", status=AccountStatus.VALID, contact=("mailto:admin@example.org",))
    accounts.save(DIRECTORY, "admin@example.org", account)

    loaded = accounts.load(DIRECTORY, "admin@example.org")
    assert loaded.kid == account.kid
    assert loaded.email == "admin@example.org"
    assert (storage.root / "accounts" / "acme.example_14000" / "admin@example.org" / "account.json").exists()

    # accounts are kept apart per contact
    assert accounts.load(DIRECTORY) is None


def test_account_key(storage):
    accounts = AccountStorage(storage)

    key = accounts.load_or_create_key(DIRECTORY, "admin@example.org", "rsa2048")
    assert key.key_size == 2048
    path = storage.root / accounts.key_path(DIRECTORY, "admin@example.org")
    assert stat.S_IMODE(path.stat().st_mode) == acmekit.util.KEY_FILE_MODE

    again = accounts.load_or_create_key(DIRECTORY, "admin@example.org", "rsa2048")
    assert again.private_numbers() == key.private_numbers()


def test_certificate_storage(storage):
    ca_key, ca_cert = generate_ca()
    key = acmekit.util.generate_ec_key()
    csr = acmekit.util.generate_csr("*.a.example", key, names=["*.a.example", "a.example"])
    leaf = sign_csr(csr, ca_key, ca_cert)

    resource = CertificateResource(
        domain="*.a.example",
        cert_url="https://acme.example/cert/1",
        certificate=acmekit.util.certificate_to_pem(leaf),
        issuer_certificate=acmekit.util.certificate_to_pem(ca_cert),
        private_key=acmekit.util.private_key_to_pem(key),
        csr=csr.public_bytes(serialization.Encoding.PEM),
        order_url="https://acme.example/order/1",
    )

    certificates = CertificateStorage(storage)
    assert not certificates.exists("*.a.example")
    certificates.save(resource)
    assert certificates.exists("*.a.example")
    assert (storage.root / "certificates" / "_.a.example.crt").exists()
    key_path = storage.root / "certificates" / "_.a.example.key"
    assert stat.S_IMODE(key_path.stat().st_mode) == acmekit.util.KEY_FILE_MODE

    loaded = certificates.load("*.a.example")
    assert loaded == resource
    assert loaded.names == ["*.a.example", "a.example"]

    with pytest.raises(FileNotFoundError):
        certificates.load("b.example")
