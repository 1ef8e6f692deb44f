import enum
import typing

import acme.messages
import josepy

from .base import datetime_field, error_field, list_of
from .identifier import Identifier


class OrderStatus(str, enum.Enum):
    # subclassing str simplifies json serialization using json.dumps
    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class Order(josepy.JSONObjectWithFields):
    """Message type for ACME order objects.

    `7.1.3. Order Objects <https://tools.ietf.org/html/rfc8555#section-7.1.3>`_

    The *URL* field is populated by copying the *Location* header from responses in the
    :class:`~acmekit.client.AcmeClient`.
    """

    identifiers: typing.Tuple[Identifier] = josepy.Field(
        "identifiers", decoder=list_of(Identifier)
    )
    """The identifiers that the order pertains to."""
    status: OrderStatus = josepy.Field("status", decoder=OrderStatus)
    """The order's status."""
    authorizations: typing.Tuple[str] = josepy.Field("authorizations")
    """URLs of the authorizations that the client needs to complete."""
    finalize: str = josepy.Field("finalize")
    """URL that the CSR is to be POSTed to once all authorizations are valid."""
    certificate: str = josepy.Field("certificate", omitempty=True)
    """URL of the certificate once it has been issued."""
    expires = datetime_field("expires", omitempty=True)
    """The :class:`datetime.datetime` after which the server will consider the order invalid."""
    not_before = datetime_field("notBefore", omitempty=True)
    not_after = datetime_field("notAfter", omitempty=True)
    error: acme.messages.Error = error_field()
    """The error that occurred while processing the order, if any."""
    url: str = josepy.Field("url", omitempty=True)
    """The order's URL at the remote CA."""

    @property
    def names(self) -> typing.List[str]:
        return [identifier.value for identifier in self.identifiers]
