import enum
import typing

import josepy

from .base import datetime_field, list_of
from .challenge import Challenge, ChallengeStatus
from .identifier import Identifier


class AuthorizationStatus(str, enum.Enum):
    # subclassing str simplifies json serialization using json.dumps
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    REVOKED = "revoked"


AUTHORIZATION_FAILED_STATES = frozenset(
    [
        AuthorizationStatus.INVALID,
        AuthorizationStatus.DEACTIVATED,
        AuthorizationStatus.EXPIRED,
        AuthorizationStatus.REVOKED,
    ]
)
"""Authorization states from which no certificate can be issued."""


class Authorization(josepy.JSONObjectWithFields):
    """Message type for ACME authorization objects.

    `7.1.4. Authorization Objects <https://tools.ietf.org/html/rfc8555#section-7.1.4>`_
    """

    identifier: Identifier = josepy.Field("identifier", decoder=Identifier.from_json)
    """The :class:`~acmekit.models.identifier.Identifier` that the account is authorized to represent."""
    status: AuthorizationStatus = josepy.Field("status", decoder=AuthorizationStatus)
    """The authorization's status."""
    expires = datetime_field("expires", omitempty=True)
    """The :class:`datetime.datetime` from which the authorization is considered expired."""
    challenges: typing.Tuple[Challenge] = josepy.Field(
        "challenges", decoder=list_of(Challenge), default=(), omitempty=True
    )
    """The challenges that the client can fulfill in order to prove possession of the identifier."""
    wildcard: bool = josepy.Field("wildcard", default=False, omitempty=True)
    """Whether the authorization was created for a wildcard identifier."""
    url: str = josepy.Field("url", omitempty=True)
    """The authorization's URL. Not part of the server's representation, populated by the client."""

    @property
    def domain(self) -> str:
        """The targeted domain, including the wildcard label for wildcard authorizations."""
        if self.wildcard:
            return f"*.{self.identifier.value}"
        return self.identifier.value

    @property
    def is_valid(self) -> bool:
        return self.status == AuthorizationStatus.VALID

    @property
    def is_failed(self) -> bool:
        return self.status in AUTHORIZATION_FAILED_STATES

    def failed_challenge(self) -> typing.Optional[Challenge]:
        """Returns the first challenge that the server reported as invalid, if any."""
        for challenge in self.challenges:
            if challenge.status == ChallengeStatus.INVALID:
                return challenge
        return None
