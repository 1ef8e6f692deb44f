import asyncio
import datetime
import hashlib
import logging
import ssl
import tempfile
import typing

from aiohttp import web
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509 import NameOID

from acmekit.client.challenge_solver import ChallengeSolver
from acmekit.models import ChallengeType
from acmekit.plugin_base import PluginRegistry
from acmekit.util import private_key_to_pem

logger = logging.getLogger(__name__)

"""This module contains a challenge solver for the tls-alpn-01 challenge type.

`RFC 8737 <https://tools.ietf.org/html/rfc8737>`_
"""

ACME_TLS_1_PROTOCOL = "acme-tls/1"
PE_ACMEIDENTIFIER = "1.3.6.1.5.5.7.1.31"
"""OID of the id-pe-acmeIdentifier extension."""


def acme_identifier_value(key_authorization: str) -> bytes:
    """DER encoding of the extension's value: an OCTET STRING holding the SHA-256 digest of the key authorization."""
    digest = hashlib.sha256(key_authorization.encode("ascii")).digest()
    return b"\x04\x20" + digest


def generate_alpn_certificate(
    domain: str, key_authorization: str = None
) -> typing.Tuple[ec.EllipticCurvePrivateKey, x509.Certificate]:
    """Generates the self-signed certificate that is presented during validation.

    :param domain: The domain being validated.
    :param key_authorization: The challenge's key authorization. The critical acmeIdentifier
        extension is omitted if *None*.
    :return: The certificate's key and the certificate.
    """
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    now = datetime.datetime.now(datetime.timezone.utc)

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(domain)]),
            critical=False,
        )
    )

    if key_authorization is not None:
        builder = builder.add_extension(
            x509.UnrecognizedExtension(
                oid=x509.ObjectIdentifier(PE_ACMEIDENTIFIER),
                value=acme_identifier_value(key_authorization),
            ),
            critical=True,
        )

    return key, builder.sign(private_key=key, algorithm=hashes.SHA256())


def _server_context(domain: str, key_authorization: str = None) -> ssl.SSLContext:
    key, cert = generate_alpn_certificate(domain, key_authorization)

    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.set_alpn_protocols([ACME_TLS_1_PROTOCOL])
    # The ssl module only loads certificates from files.
    with tempfile.NamedTemporaryFile(suffix=".pem") as pem:
        pem.write(private_key_to_pem(key))
        pem.write(cert.public_bytes(Encoding.PEM))
        pem.flush()
        ctx.load_cert_chain(pem.name)

    return ctx


@PluginRegistry.register_plugin("tlsalpn01")
class TLSALPN01Solver(ChallengeSolver):
    """Answers tls-alpn-01 challenges with a built-in TLS server.

    Depending on the SNI that the CA sends, the server presents a self-signed certificate
    carrying the challenge's acmeIdentifier extension and negotiates the *acme-tls/1* protocol.
    """

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.TLS_ALPN_01])

    class Config(ChallengeSolver.Config):
        type: typing.Literal["tlsalpn01"] = "tlsalpn01"
        host: str = "0.0.0.0"
        """Address to bind the challenge server to"""
        port: int = 443
        """Port to bind the challenge server to. The CA always connects to port 443."""

    def __init__(self, cfg: Config = None):
        super().__init__(cfg)
        cfg = cfg or self.Config()

        self._host = cfg.host
        self._port = cfg.port
        self._contexts: typing.Dict[str, ssl.SSLContext] = dict()
        self._runner: typing.Optional[web.AppRunner] = None
        self._lock = asyncio.Lock()

        self.app = web.Application()
        self.app.add_routes([web.get("/", self._handler)])

    @property
    def port(self) -> typing.Optional[int]:
        if self._runner is None or not self._runner.addresses:
            return None
        return self._runner.addresses[0][1]

    async def _handler(self, request):
        return web.Response(text="OK")

    def sni_cb(self, client: ssl.SSLObject, name: str, ctx_: ssl.SSLContext):
        if name is None:
            return
        if ctx := self._contexts.get(name.lower()):
            client.context = ctx
        else:
            logger.debug("No tls-alpn-01 challenge pending for %s", name)

    async def _start(self) -> None:
        async with self._lock:
            if self._runner is not None:
                return

            loop = asyncio.get_running_loop()
            ctx = await loop.run_in_executor(None, _server_context, "acmekit.invalid", None)
            ctx.sni_callback = self.sni_cb

            runner = web.AppRunner(self.app)
            await runner.setup()
            site = web.TCPSite(runner, self._host, self._port, ssl_context=ctx)
            try:
                await site.start()
            except OSError:
                await runner.cleanup()
                raise

            self._runner = runner
            logger.info("tls-alpn-01 challenge server listening on %s", runner.addresses)

    async def stop(self) -> None:
        async with self._lock:
            if self._runner is None:
                return
            await self._runner.cleanup()
            self._runner = None
            logger.info("tls-alpn-01 challenge server stopped")

    async def present(self, domain: str, token: str, key_authorization: str) -> None:
        loop = asyncio.get_running_loop()
        self._contexts[domain.lower()] = await loop.run_in_executor(
            None, _server_context, domain, key_authorization
        )
        await self._start()

    async def cleanup(self, domain: str, token: str, key_authorization: str) -> None:
        self._contexts.pop(domain.lower(), None)
        if not self._contexts:
            await self.stop()
