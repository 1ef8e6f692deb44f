import typing

import josepy


class DirectoryMeta(josepy.JSONObjectWithFields):
    """The *meta* object of an ACME directory.

    `7.1.1. Directory <https://tools.ietf.org/html/rfc8555#section-7.1.1>`_
    """

    terms_of_service: str = josepy.Field("termsOfService", omitempty=True)
    website: str = josepy.Field("website", omitempty=True)
    caa_identities: typing.Tuple[str] = josepy.Field("caaIdentities", omitempty=True)
    external_account_required: bool = josepy.Field(
        "externalAccountRequired", default=False, omitempty=True
    )
    profiles = josepy.Field("profiles", omitempty=True)


class Directory(josepy.JSONObjectWithFields):
    """The ACME server's directory, i.e. its map of protocol endpoint URLs.

    Fetched once per client session and read-only afterwards.
    """

    new_nonce: str = josepy.Field("newNonce", omitempty=True)
    new_account: str = josepy.Field("newAccount", omitempty=True)
    new_order: str = josepy.Field("newOrder", omitempty=True)
    new_authz: str = josepy.Field("newAuthz", omitempty=True)
    revoke_cert: str = josepy.Field("revokeCert", omitempty=True)
    key_change: str = josepy.Field("keyChange", omitempty=True)
    renewal_info: str = josepy.Field("renewalInfo", omitempty=True)
    meta: DirectoryMeta = josepy.Field(
        "meta", decoder=DirectoryMeta.from_json, default=DirectoryMeta(), omitempty=True
    )

    @property
    def terms_of_service(self) -> typing.Optional[str]:
        return self.meta.terms_of_service

    @property
    def external_account_required(self) -> bool:
        return bool(self.meta.external_account_required)
