"""Persistence of accounts and issued certificates.

The client only depends on the small :class:`Storage` interface, so that backends other
than the local file system can be plugged in.
"""
import abc
import json
import logging
import os
import typing
from pathlib import Path, PurePosixPath

import yarl

from acmekit.client.client import CertificateResource
from acmekit.models import Account
from acmekit.util import KEY_FILE_MODE, PrivateKey, generate_private_key, load_private_key, private_key_to_pem

logger = logging.getLogger(__name__)


class Storage(abc.ABC):
    """Synchronous key-value storage addressed by relative, slash-separated paths."""

    @abc.abstractmethod
    def ensure_path(self, path: str) -> None:
        """Makes sure that objects can be written below the given path."""
        pass

    @abc.abstractmethod
    def write(self, path: str, data: bytes, private: bool = False) -> None:
        """Writes the given data.

        :param path: The object's path.
        :param data: The object's contents.
        :param private: Whether the object is secret, e.g. a private key, and must only be readable by its owner.
        """
        pass

    @abc.abstractmethod
    def read(self, path: str) -> bytes:
        """Reads an object.

        :raises: :class:`FileNotFoundError` If there is no object at the given path.
        """
        pass

    @abc.abstractmethod
    def exists(self, path: str) -> bool:
        pass


class FileSystemStorage(Storage):
    """Stores objects as files below a root directory."""

    def __init__(self, root: typing.Union[str, Path]):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts:
            raise ValueError(f"Invalid storage path {path}")
        return self._root.joinpath(*relative.parts)

    def ensure_path(self, path: str) -> None:
        self._resolve(path).mkdir(mode=0o700, parents=True, exist_ok=True)

    def write(self, path: str, data: bytes, private: bool = False) -> None:
        target = self._resolve(path)
        target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        if private:
            fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, KEY_FILE_MODE)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            target.chmod(KEY_FILE_MODE)
        else:
            target.write_bytes(data)

        logger.debug("Wrote %s", target)

    def read(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()


def _safe_name(name: str) -> str:
    return name.replace("*", "_").replace("/", "_").replace(":", "_")


class AccountStorage:
    """Stores ACME accounts and their keys per CA and contact email.

    Layout: ``accounts/<ca host>/<email>/account.json`` and ``accounts/<ca host>/<email>/keys/account.key``.
    """

    ROOT = "accounts"
    DEFAULT_NAME = "default"

    def __init__(self, storage: Storage):
        self._storage = storage

    def _base(self, directory_url: str, email: typing.Optional[str]) -> str:
        url = yarl.URL(directory_url)
        host = url.host or "unknown"
        if url.port and not url.is_default_port():
            host = f"{host}_{url.port}"
        return f"{self.ROOT}/{_safe_name(host)}/{_safe_name(email or self.DEFAULT_NAME)}"

    def load(self, directory_url: str, email: str = None) -> typing.Optional[Account]:
        """Loads the account that is stored for the given CA and email, if any."""
        path = f"{self._base(directory_url, email)}/account.json"
        if not self._storage.exists(path):
            return None
        return Account.json_loads(self._storage.read(path))

    def save(self, directory_url: str, email: typing.Optional[str], account: Account) -> None:
        base = self._base(directory_url, email)
        self._storage.ensure_path(base)
        self._storage.write(f"{base}/account.json", account.json_dumps(indent=2).encode())

    def key_path(self, directory_url: str, email: str = None) -> str:
        return f"{self._base(directory_url, email)}/keys/account.key"

    def load_or_create_key(
        self, directory_url: str, email: str = None, key_type: str = "ec256"
    ) -> PrivateKey:
        """Loads the account key for the given CA and email, generating and storing one if there is none.

        :param key_type: The type of the key to generate, see :data:`acmekit.util.KEY_TYPES`.
        """
        path = self.key_path(directory_url, email)
        if self._storage.exists(path):
            return load_private_key(self._storage.read(path))

        logger.info("No account key found at %s, generating a %s key", path, key_type)
        key = generate_private_key(key_type)
        self._storage.ensure_path(path.rsplit("/", 1)[0])
        self._storage.write(path, private_key_to_pem(key), private=True)
        return key


class CertificateStorage:
    """Stores issued certificates, their keys and metadata by main domain.

    Writes ``<domain>.crt``, ``<domain>.issuer.crt``, ``<domain>.key``, ``<domain>.csr``
    and ``<domain>.json`` below ``certificates/``. The wildcard label ``*`` is stored as ``_``.
    """

    ROOT = "certificates"

    def __init__(self, storage: Storage):
        self._storage = storage
        self._storage.ensure_path(self.ROOT)

    def _path(self, domain: str, extension: str) -> str:
        return f"{self.ROOT}/{_safe_name(domain)}{extension}"

    def exists(self, domain: str) -> bool:
        return self._storage.exists(self._path(domain, ".crt"))

    def save(self, resource: CertificateResource) -> None:
        domain = resource.domain
        self._storage.write(self._path(domain, ".crt"), resource.certificate.encode())

        if resource.issuer_certificate:
            self._storage.write(
                self._path(domain, ".issuer.crt"), resource.issuer_certificate.encode()
            )
        if resource.private_key:
            self._storage.write(self._path(domain, ".key"), resource.private_key, private=True)
        if resource.csr:
            self._storage.write(self._path(domain, ".csr"), resource.csr)

        meta = {
            "domain": domain,
            "cert_url": resource.cert_url,
            "order_url": resource.order_url,
        }
        self._storage.write(self._path(domain, ".json"), json.dumps(meta, indent=2).encode())
        logger.info("[%s] Stored certificate", domain)

    def load(self, domain: str) -> CertificateResource:
        """Loads a stored certificate.

        :raises: :class:`FileNotFoundError` If no certificate is stored for the domain.
        """
        meta = json.loads(self._storage.read(self._path(domain, ".json")))

        def optional(extension: str) -> typing.Optional[bytes]:
            path = self._path(domain, extension)
            return self._storage.read(path) if self._storage.exists(path) else None

        issuer = optional(".issuer.crt")
        return CertificateResource(
            domain=meta["domain"],
            cert_url=meta["cert_url"],
            certificate=self._storage.read(self._path(domain, ".crt")).decode(),
            issuer_certificate=issuer.decode() if issuer else None,
            private_key=optional(".key"),
            csr=optional(".csr"),
            order_url=meta.get("order_url"),
        )
