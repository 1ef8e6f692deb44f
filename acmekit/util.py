import email.utils
import ipaddress
import logging
import re
import typing
from datetime import datetime, timezone
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.x509 import NameOID

logger = logging.getLogger(__name__)

KEY_FILE_MODE = 0o600

KEY_TYPES = {
    "rsa2048": ("rsa", 2048),
    "rsa3072": ("rsa", 3072),
    "rsa4096": ("rsa", 4096),
    "rsa8192": ("rsa", 8192),
    "ec256": ("ec", 256),
    "ec384": ("ec", 384),
}
"""Key types that may be requested for account and certificate keys."""

PrivateKey = typing.Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]


def _write_key(path: Path, private_key: PrivateKey) -> None:
    path.touch(KEY_FILE_MODE) if not path.exists() else path.chmod(KEY_FILE_MODE)

    with open(path, "wb") as pem_out:
        pem_out.write(private_key_to_pem(private_key))


def private_key_to_pem(private_key: PrivateKey) -> bytes:
    """Serializes the given private key as unencrypted PEM.

    :param private_key: The private key to serialize.
    :return: The PEM-encoded key.
    """
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_private_key(data: bytes) -> PrivateKey:
    """Loads a PEM-encoded RSA or EC private key.

    :raises: :class:`ValueError` If the data does not contain a supported private key.
    """
    key = serialization.load_pem_private_key(data, password=None)
    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ValueError(f"Unsupported private key type {type(key).__name__}")
    return key


def generate_rsa_key(path: Path = None, key_size=2048) -> rsa.RSAPrivateKey:
    """Generates an RSA private key and optionally saves it to the given path as PEM.

    :param path: The path to write the PEM-serialized key to.
    :param key_size: The RSA key size.
    :return: The generated private key.
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    if path:
        _write_key(Path(path), private_key)

    return private_key


def generate_ec_key(path: Path = None, key_size=256) -> ec.EllipticCurvePrivateKey:
    """Generates an EC private key and optionally saves it to the given path as PEM.

    :param path: The path to write the PEM-serialized key to.
    :param key_size: The EC key size, i.e. the bit length of the curve.
    :return: The generated private key.
    """
    curve = getattr(ec, f"SECP{key_size}R1")
    private_key = ec.generate_private_key(curve())

    if path:
        _write_key(Path(path), private_key)

    return private_key


def generate_private_key(key_type: str, path: Path = None) -> PrivateKey:
    """Generates a private key of the given type.

    :param key_type: One of the names in :data:`KEY_TYPES`, e.g. *ec256* or *rsa4096*.
    :param path: Optional path to write the PEM-serialized key to.
    :raises: :class:`ValueError` If the key type is unknown.
    :return: The generated private key.
    """
    try:
        kind, size = KEY_TYPES[key_type.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown key type {key_type}. Valid options: {', '.join(KEY_TYPES)}."
        )

    if kind == "rsa":
        return generate_rsa_key(path, size)
    return generate_ec_key(path, size)


def _general_name(name: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(name))
    except ValueError:
        return x509.DNSName(name)


def generate_csr(
    CN: str,
    private_key: PrivateKey,
    path: Path = None,
    names: typing.List[str] = None,
    must_staple: bool = False,
) -> x509.CertificateSigningRequest:
    """Generates a certificate signing request.

    :param CN: The requested common name.
    :param private_key: The private key to sign the CSR with.
    :param path: The path to write the PEM-serialized CSR to, if any.
    :param names: The requested names in the CSR. IP addresses are added as *iPAddress* SANs.
    :param must_staple: Whether to add the OCSP Must-Staple extension.
    :return: The generated CSR.
    """
    names = names or [CN]
    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, CN)]))
        .add_extension(
            x509.SubjectAlternativeName([_general_name(name) for name in names]),
            critical=False,
        )
    )

    if must_staple:
        builder = builder.add_extension(
            x509.TLSFeature([x509.TLSFeatureType.status_request]), critical=False
        )

    csr = builder.sign(private_key, hashes.SHA256())

    if path:
        with open(path, "wb") as pem_out:
            pem_out.write(csr.public_bytes(serialization.Encoding.PEM))

    return csr


def csr_to_der(csr: x509.CertificateSigningRequest) -> bytes:
    return csr.public_bytes(serialization.Encoding.DER)


def names_of(
    csr: x509.CertificateSigningRequest, lower: bool = False
) -> typing.List[str]:
    """Returns all names contained in the given CSR, common name first.

    :param csr: The CSR whose names to extract.
    :param lower: True if the names should be returned in lowercase.
    :return: Ordered list of the contained identifier strings without duplicates.
    """
    names = [
        v.value
        for v in csr.subject.get_attributes_for_oid(x509.oid.NameOID.COMMON_NAME)
    ]
    try:
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        pass
    else:
        names.extend(san.get_values_for_type(x509.DNSName))
        names.extend(str(ip) for ip in san.get_values_for_type(x509.IPAddress))

    if lower:
        names = [name.lower() for name in names]

    return list(dict.fromkeys(names))


def pem_split(
    pem: str,
) -> typing.List[
    typing.Union[
        x509.CertificateSigningRequest,
        x509.Certificate,
        PrivateKey,
    ]
]:
    """Parses a PEM encoded string and returns all contained CSRs, certificates and private keys.

    :param pem: The concatenated PEM encoded objects.
    :return: List of all objects found in the PEM string.
    """
    _PEM_TO_CLASS = {
        b"CERTIFICATE": x509.load_pem_x509_certificate,
        b"CERTIFICATE REQUEST": x509.load_pem_x509_csr,
        b"EC PRIVATE KEY": lambda x: serialization.load_pem_private_key(
            x, password=None
        ),
        b"RSA PRIVATE KEY": lambda x: serialization.load_pem_private_key(
            x, password=None
        ),
        b"PRIVATE KEY": lambda x: serialization.load_pem_private_key(
            x, password=None
        ),
    }

    _PEM_RE = re.compile(
        b"-----BEGIN (?P<cls>"
        + b"|".join(_PEM_TO_CLASS.keys())
        + b""")-----"""
        + b"""\r?
.+?\r?
-----END \\1-----\r?\n?""",
        re.DOTALL,
    )

    return [
        _PEM_TO_CLASS[match.groupdict()["cls"]](match.group(0))
        for match in _PEM_RE.finditer(pem.encode())
    ]


def load_pem_certificates(pem: str) -> typing.List[x509.Certificate]:
    """Parses a PEM certificate chain without reordering it.

    :param pem: The PEM encoded chain as served by the CA.
    :raises: :class:`ValueError` If the input does not contain a single well-formed certificate.
    :return: The certificates in the order they appear in the input.
    """
    certificates = [
        obj for obj in pem_split(pem) if isinstance(obj, x509.Certificate)
    ]
    if not certificates:
        raise ValueError("The PEM data does not contain any certificates")
    return certificates


def certificate_to_pem(certificate: x509.Certificate) -> str:
    return certificate.public_bytes(serialization.Encoding.PEM).decode()


def names_of_certificate(certificate: x509.Certificate) -> typing.List[str]:
    """Returns the names of a certificate, common name first.

    :param certificate: The certificate whose names to extract.
    :return: Ordered list of names without duplicates.
    """
    names = [
        v.value
        for v in certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    ]
    try:
        san = certificate.extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        ).value
    except x509.ExtensionNotFound:
        pass
    else:
        names.extend(san.get_values_for_type(x509.DNSName))
        names.extend(str(ip) for ip in san.get_values_for_type(x509.IPAddress))

    return list(dict.fromkeys(names))


def sanitize_domains(domains: typing.Iterable[str]) -> typing.List[str]:
    """Converts the given names to the form in which they appear in a certificate.

    Internationalized names are encoded to punycode; IP addresses are passed through.
    Names that cannot be encoded are skipped.

    :param domains: The names to sanitize.
    :return: The sanitized names in their original order, without duplicates.
    """
    sanitized = []
    for domain in domains:
        try:
            ipaddress.ip_address(domain)
            sanitized.append(domain)
            continue
        except ValueError:
            pass

        try:
            sanitized.append(domain.encode("idna").decode("ascii"))
        except UnicodeError as e:
            logger.info("Skipping domain %r: unable to sanitize (punycode): %s", domain, e)

    return list(dict.fromkeys(sanitized))


def identifiers_from_names(
    names: typing.Iterable[str],
) -> typing.List[typing.Dict[str, str]]:
    """Maps names to ACME identifier objects, detecting IP addresses.

    :param names: The names to map.
    :return: List of :class:`dict` containing the *type* and *value* of each identifier.
    """
    identifiers = list()
    for name in names:
        try:
            ipaddress.ip_address(name)
            identifiers.append({"type": "ip", "value": name})
        except ValueError:
            identifiers.append({"type": "dns", "value": name})
    return identifiers


def parse_retry_after(value: typing.Optional[str]) -> typing.Optional[float]:
    """Parses the value of a *Retry-After* header.

    :param value: Either a number of seconds or an HTTP date.
    :return: The delay in seconds or *None* if the header was absent or malformed.
    """
    if not value:
        return None

    value = value.strip()
    if value.isdigit():
        return float(value)

    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None

    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)

    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())
