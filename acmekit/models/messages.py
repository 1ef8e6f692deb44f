import enum
import json
import typing

import josepy
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .account import AccountStatus
from .authorization import AuthorizationStatus
from .base import datetime_field
from ..util import identifiers_from_names


class RevocationReason(enum.Enum):
    """Certificate revocation reasons.

    Defined in `5.3.1. Reason Code <https://tools.ietf.org/html/rfc5280#section-5.3.1>`_ of RFC 5280.
    """

    unspecified = 0
    keyCompromise = 1
    cACompromise = 2
    affiliationChanged = 3
    superseded = 4
    cessationOfOperation = 5
    certificateHold = 6
    # value 7 is unused
    removeFromCRL = 8
    privilegeWithdrawn = 9
    aACompromise = 10


def encode_cert(cert: x509.Certificate) -> str:
    return josepy.encode_b64jose(cert.public_bytes(encoding=serialization.Encoding.DER))


def decode_cert(b64der: str) -> x509.Certificate:
    return x509.load_der_x509_certificate(josepy.decode_b64jose(b64der))


class Revocation(josepy.JSONObjectWithFields):
    """Message type for certificate revocation requests."""

    certificate: x509.Certificate = josepy.Field(
        "certificate", decoder=decode_cert, encoder=encode_cert
    )
    """The certificate to be revoked."""
    reason: RevocationReason = josepy.Field(
        "reason",
        decoder=RevocationReason,
        encoder=lambda reason: reason.value,
        omitempty=True,
    )
    """The reason for the revocation."""


def encode_csr(csr: x509.CertificateSigningRequest) -> str:
    # Encode CSR as JOSE Base-64 DER.
    return josepy.encode_b64jose(csr.public_bytes(encoding=serialization.Encoding.DER))


def decode_csr(b64der: str) -> x509.CertificateSigningRequest:
    return x509.load_der_x509_csr(josepy.decode_b64jose(b64der))


class CertificateRequest(josepy.JSONObjectWithFields):
    """Message type for certificate requests, i.e. the payload of an order finalization."""

    csr: x509.CertificateSigningRequest = josepy.Field(
        "csr", decoder=decode_csr, encoder=encode_csr
    )
    """The certificate signing request."""


class NewOrder(josepy.JSONObjectWithFields):
    """Message type for new order requests."""

    identifiers: typing.List[typing.Dict[str, str]] = josepy.Field(
        "identifiers", omitempty=True
    )
    """The requested identifiers."""
    not_before = datetime_field("notBefore", omitempty=True)
    """The requested *notBefore* field in the certificate."""
    not_after = datetime_field("notAfter", omitempty=True)
    """The requested *notAfter* field in the certificate."""
    profile: str = josepy.Field("profile", omitempty=True)
    """The requested certificate profile, if the server advertises profiles."""

    @classmethod
    def from_data(
        cls,
        identifiers: typing.Union[
            typing.List[typing.Dict[str, str]], typing.List[str]
        ] = None,
        not_before: "datetime.datetime" = None,
        not_after: "datetime.datetime" = None,
        profile: str = None,
    ) -> "NewOrder":
        """Class factory that takes care of parsing the list of *identifiers*.

        :param identifiers: Either a :class:`list` of :class:`dict` where each dict consists of the keys *type* \
            and *value*, or a :class:`list` of :class:`str` that represent the DNS names or IP addresses.
        :param not_before: The requested *notBefore* field in the certificate.
        :param not_after: The requested *notAfter* field in the certificate.
        :param profile: The requested certificate profile.
        :return: The new order object.
        """
        if not identifiers:
            raise ValueError("Cannot create an order without identifiers")

        if all(type(identifier) is dict for identifier in identifiers):
            parsed = [dict(identifier) for identifier in identifiers]
        elif all(type(identifier) is str for identifier in identifiers):
            parsed = identifiers_from_names(identifiers)
        else:
            raise ValueError(
                "Could not decode identifiers list. Must be either List(str) or List(dict) where "
                "the dict has two keys 'type' and 'value'"
            )

        return cls(
            identifiers=parsed,
            not_before=not_before,
            not_after=not_after,
            profile=profile,
        )


class JSONDeSerializableAllowEmpty(josepy.JSONDeSerializable):
    """JSONDeSerializable that allows an empty string as the input for :func:`json_loads`."""

    @classmethod
    def json_loads(cls, json_string: typing.Union[str, bytes]) -> "josepy.JSONDeSerializable":
        try:
            if len(json_string) == 0:
                loads = {}
            else:
                loads = json.loads(json_string)
        except ValueError as error:
            raise josepy.errors.DeserializationError(error)
        return cls.from_json(loads)


class AuthorizationUpdate(JSONDeSerializableAllowEmpty, josepy.JSONObjectWithFields):
    """Message type for authorization update requests, i.e. deactivation."""

    status: AuthorizationStatus = josepy.Field(
        "status", decoder=AuthorizationStatus, omitempty=True
    )
    """The authorization's new status."""


class AccountUpdate(JSONDeSerializableAllowEmpty, josepy.JSONObjectWithFields):
    """Message type for account update requests.

    Used to change the contact information, to agree to the terms of service and to deactivate the account.
    """

    contact: typing.Tuple[str] = josepy.Field("contact", omitempty=True)
    """The account's new contact info."""
    status: AccountStatus = josepy.Field("status", decoder=AccountStatus, omitempty=True)
    """The account's new status."""
    terms_of_service_agreed: bool = josepy.Field(
        "termsOfServiceAgreed", omitempty=True
    )
    """Whether the terms of service are agreed to."""
