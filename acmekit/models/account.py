import enum
import typing

import josepy


class AccountStatus(str, enum.Enum):
    # subclassing str simplifies json serialization using json.dumps
    VALID = "valid"
    DEACTIVATED = "deactivated"
    REVOKED = "revoked"


class Account(josepy.JSONObjectWithFields):
    """Representation of the ACME account that the :class:`~acmekit.client.AcmeClient` uses internally.

    Mirrors the server's account object and adds a *kid* field.
    The :attr:`kid` field is sent to the remote server with every request and used for request verification.
    Instances are persisted by :class:`~acmekit.storage.AccountStorage` and reused on subsequent runs.
    """

    status: AccountStatus = josepy.Field(
        "status", decoder=AccountStatus, omitempty=True
    )
    """The account's status."""
    contact: typing.Tuple[str] = josepy.Field("contact", omitempty=True)
    """The account's contact info."""
    terms_of_service_agreed: bool = josepy.Field(
        "termsOfServiceAgreed", omitempty=True
    )
    """Whether the terms of service were agreed to."""
    orders: str = josepy.Field("orders", omitempty=True)
    """URL of the account's orders list."""
    kid: str = josepy.Field("kid")
    """The account's key ID, i.e. its URL."""

    @property
    def email(self) -> typing.Optional[str]:
        for contact in self.contact or ():
            if contact.startswith("mailto:"):
                return contact[len("mailto:") :]
        return None
