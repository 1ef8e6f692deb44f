import enum
import typing

import acme.messages
import josepy

from .base import datetime_field, error_field


class ChallengeStatus(str, enum.Enum):
    # subclassing str simplifies json serialization using json.dumps
    PENDING = "pending"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class ChallengeType(str, enum.Enum):
    """The types that a :class:`Challenge` can have.

    Subclassing :class:`str` simplifies json serialization using :func:`json.dumps`.
    """

    HTTP_01 = "http-01"
    """The ACME *http-01* challenge type.
    See `8.3. HTTP Challenge <https://tools.ietf.org/html/rfc8555#section-8.3>`_"""
    DNS_01 = "dns-01"
    """The ACME *dns-01* challenge type.
    See `8.4. DNS Challenge <https://tools.ietf.org/html/rfc8555#section-8.4>`_"""
    TLS_ALPN_01 = "tls-alpn-01"
    """The ACME *tls-alpn-01* challenge type.
    See `RFC 8737 <https://tools.ietf.org/html/rfc8737>`_"""
    DNS_PERSIST_01 = "dns-persist-01"
    """The ACME *dns-persist-01* challenge type.
    See `draft-ietf-acme-dns-persist <https://datatracker.ietf.org/doc/draft-ietf-acme-dns-persist/>`_"""

    @classmethod
    def parse(cls, value: str) -> typing.Optional["ChallengeType"]:
        """Maps a challenge type string to a member, or *None* if the type is unknown to the client."""
        try:
            return cls(value)
        except ValueError:
            return None


class Challenge(josepy.JSONObjectWithFields):
    """Message type for ACME challenge objects.

    `8. Identifier Validation Challenges <https://tools.ietf.org/html/rfc8555#section-8>`_

    The *type* is kept as a plain string, so that challenges of types the client does not know
    can still be parsed (and ignored).
    """

    type: str = josepy.Field("type")
    """The challenge's type, see :class:`ChallengeType`."""
    url: str = josepy.Field("url")
    """The challenge's URL."""
    status: ChallengeStatus = josepy.Field(
        "status", decoder=ChallengeStatus, default=ChallengeStatus.PENDING, omitempty=True
    )
    """The challenge's status."""
    token: str = josepy.Field("token", omitempty=True)
    """The token that is used during the challenge validation process.
    See `8.1.  Key Authorizations <https://tools.ietf.org/html/rfc8555#section-8.1>`_"""
    validated = datetime_field("validated", omitempty=True)
    """The :class:`datetime.datetime` when the challenge was validated."""
    error: acme.messages.Error = error_field()
    """The error that occurred while validating the challenge."""
    issuer_domain_names: typing.Tuple[str] = josepy.Field(
        "issuer-domain-names", omitempty=True
    )
    """The issuer domain names offered by a *dns-persist-01* challenge."""

    @property
    def challenge_type(self) -> typing.Optional[ChallengeType]:
        return ChallengeType.parse(self.type)
