import asyncio
import hashlib
import logging
import ssl

import pytest
from cryptography import x509

from acmekit.plugins.tlsalpn01_solver import (
    ACME_TLS_1_PROTOCOL,
    PE_ACMEIDENTIFIER,
    TLSALPN01Solver,
    acme_identifier_value,
    generate_alpn_certificate,
)

log = logging.getLogger(__name__)
log.setLevel(logging.DEBUG)


def test_acme_identifier_value():
    value = acme_identifier_value("token.thumbprint")
    assert len(value) == 34
    assert value[:2] == b"\x04\x20"
    assert value[2:] == hashlib.sha256(b"token.thumbprint").digest()


def test_alpn_certificate():
    _, cert = generate_alpn_certificate("a.example", "token.thumbprint")

    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.DNSName) == ["a.example"]

    ext = cert.extensions.get_extension_for_oid(x509.ObjectIdentifier(PE_ACMEIDENTIFIER))
    assert ext.critical
    assert ext.value.value == acme_identifier_value("token.thumbprint")


def test_alpn_certificate_without_key_authorization():
    _, cert = generate_alpn_certificate("a.example")

    with pytest.raises(x509.ExtensionNotFound):
        cert.extensions.get_extension_for_oid(x509.ObjectIdentifier(PE_ACMEIDENTIFIER))


async def handshake(port: int, server_name: str):
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    ctx.set_alpn_protocols([ACME_TLS_1_PROTOCOL])

    reader, writer = await asyncio.open_connection(
        "127.0.0.1", port, ssl=ctx, server_hostname=server_name
    )
    try:
        ssl_object = writer.get_extra_info("ssl_object")
        der = ssl_object.getpeercert(binary_form=True)
        return ssl_object.selected_alpn_protocol(), x509.load_der_x509_certificate(der)
    finally:
        writer.close()
        await writer.wait_closed()


@pytest.mark.asyncio
async def test_tlsalpn01_solver_presents_certificate():
    solver = TLSALPN01Solver(TLSALPN01Solver.Config(host="127.0.0.1", port=0))
    await solver.present("a.example", "token", "token.thumbprint")

    try:
        protocol, cert = await handshake(solver.port, "a.example")
        assert protocol == ACME_TLS_1_PROTOCOL
        ext = cert.extensions.get_extension_for_oid(x509.ObjectIdentifier(PE_ACMEIDENTIFIER))
        assert ext.value.value == acme_identifier_value("token.thumbprint")

        # unknown names get the default certificate without the extension
        _, cert = await handshake(solver.port, "b.example")
        with pytest.raises(x509.ExtensionNotFound):
            cert.extensions.get_extension_for_oid(x509.ObjectIdentifier(PE_ACMEIDENTIFIER))
    finally:
        await solver.cleanup("a.example", "token", "token.thumbprint")

    assert solver.port is None
