import asyncio
import datetime
import logging
import ssl
import typing
from dataclasses import dataclass
from pathlib import Path

import acme.messages
import aiohttp
import josepy
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from pydantic import Field
from pydantic_settings import BaseSettings

import acmekit.util
from acmekit.client.challenge_solver import ChallengeSolver
from acmekit.client.exceptions import (
    AccountDoesNotExist,
    AcmeClientException,
    AuthorizationInvalid,
    ConfigurationError,
    NoUsableChallenge,
    ObtainError,
    OrderInvalid,
    PollingException,
    PollingTimeout,
    TermsOfServiceRequired,
)
from acmekit.client.orchestrator import ChallengeOrchestrator
from acmekit.client.polling import RetryPolicy, poll_until
from acmekit.client.signer import RequestSigner
from acmekit.models import (
    Account,
    AccountStatus,
    Authorization,
    AuthorizationStatus,
    Challenge,
    Directory,
    Order,
    OrderStatus,
)
from acmekit.models import messages
from acmekit.version import __version__

logger = logging.getLogger(__name__)


@dataclass
class ExternalAccountBindingCredentials:
    """Stores external account binding credentials to later create a binding JWS using
    :class:`~acme.messages.ExternalAccountBinding`.
    """

    kid: str
    """The external account binding's key identifier"""
    hmac_key: str
    """The external account binding's symmetric encryption key"""

    def create_eab(self, public_key: josepy.jwk.JWK, new_account_url: str) -> dict:
        """Creates an external account binding from the stored credentials.

        :param public_key: The account's public key
        :param new_account_url: The URL of the server's *newAccount* resource
        :raises: :class:`ValueError` If the kid or the hmac_key is missing.
        :return: The JWS representing the external account binding
        """
        if self.kid and self.hmac_key:
            return acme.messages.ExternalAccountBinding.from_data(
                public_key, self.kid, self.hmac_key, {"newAccount": new_account_url}
            )
        else:
            raise ValueError("Must specify both kid and hmac_key")


@dataclass
class CertificateResource:
    """An issued certificate together with the material it was requested with."""

    domain: str
    """The main domain, i.e. the certificate's common name."""
    cert_url: str
    """The URL the certificate was downloaded from."""
    certificate: str
    """The PEM-encoded certificate chain, leaf first."""
    issuer_certificate: typing.Optional[str] = None
    """The PEM-encoded issuer chain, if the server provided one."""
    private_key: typing.Optional[bytes] = None
    """The PEM-encoded certificate key. *None* if the certificate was requested for an existing CSR."""
    csr: typing.Optional[bytes] = None
    """The PEM-encoded CSR that was submitted."""
    order_url: typing.Optional[str] = None
    """The URL of the order that the certificate was issued for."""

    @property
    def names(self) -> typing.List[str]:
        leaf = acmekit.util.load_pem_certificates(self.certificate)[0]
        return acmekit.util.names_of_certificate(leaf)


class AcmeClient:
    """ACME compliant client.

    Resolves the account, drives orders through their authorizations and challenges
    using the registered :class:`ChallengeSolver` instances and finalizes them.

    The client must be started with :meth:`start` before use and closed with :meth:`close`
    afterwards. It may also be used as an async context manager.
    """

    class Config(BaseSettings, extra="forbid"):
        directory: str = ""
        """The ACME server's directory URL"""
        private_key: typing.Optional[Path] = None
        """Path of the PEM-encoded RSA or EC account key"""
        alg: typing.Optional[str] = None
        """Signature algorithm to use with the account key. Derived from the key type if unset."""
        contact: typing.Dict[str, str] = Field(default_factory=dict)
        """Contact info to supply on registration. May contain the keys *email* and *phone*."""
        server_cert: typing.Optional[Path] = None
        """Path of an additional CA certificate to trust, e.g. for test CAs"""
        eab_kid: typing.Optional[str] = None
        """The external account binding's key identifier"""
        eab_hmac_key: typing.Optional[str] = None
        """The external account binding's symmetric encryption key"""
        agree_tos: bool = False
        """Whether the CA's terms of service are agreed to on registration"""
        key_type: str = "ec256"
        """Type of the keys that are generated for certificates"""
        must_staple: bool = False
        """Whether to request the OCSP Must-Staple extension"""
        bundle: bool = True
        """Whether to append the issuer to the certificate if the server only sent the leaf"""
        profile: typing.Optional[str] = None
        """The certificate profile to request, if the server supports profiles"""
        issuer_domain_name: typing.Optional[str] = None
        """The issuer domain name to use in *dns-persist-01* records"""
        persist_until: typing.Optional[datetime.datetime] = None
        """Expiry of *dns-persist-01* records"""

    ORDER_POLICY = RetryPolicy(interval=3.0, timeout=60.0)
    """Polling policy while waiting for an order to become *ready* after its authorizations were validated."""
    FINALIZE_POLICY = RetryPolicy(interval=3.0, timeout=180.0)
    """Polling policy while waiting for a finalized order to become *valid*."""

    def __init__(
        self,
        cfg: Config,
        *,
        private_key: acmekit.util.PrivateKey = None,
        account_storage: "acmekit.storage.AccountStorage" = None,
    ):
        """Creates an :class:`AcmeClient` instance.

        :param cfg: The client's configuration.
        :param private_key: The account key. Overrides the key file given in the configuration.
        :param account_storage: Storage for the account, so that it is reused across runs.
        :raises: :class:`~acmekit.client.exceptions.ConfigurationError` If the account key is
            missing or cannot be used with the configured algorithm.
        """
        self._cfg = cfg
        self._ssl_context = ssl.create_default_context()

        if cfg.server_cert:
            # Add our self-signed server cert for testing purposes.
            self._ssl_context.load_verify_locations(cafile=str(cfg.server_cert))

        if private_key is None:
            private_key = self._open_key(cfg.private_key)

        self._signer = RequestSigner(
            None, private_key, alg=cfg.alg, ssl_context=self._ssl_context
        )
        self._session: typing.Optional[aiohttp.ClientSession] = None
        self._directory_url = cfg.directory
        self._directory: typing.Optional[Directory] = None
        # Filter empty strings
        self._contact = {k: v for k, v in cfg.contact.items() if v}
        self._account: typing.Optional[Account] = None
        self._account_storage = account_storage

        self._orchestrator = ChallengeOrchestrator(
            self,
            issuer_domain_name=cfg.issuer_domain_name,
            persist_until=cfg.persist_until,
        )
        self.eab_credentials = (cfg.eab_kid, cfg.eab_hmac_key)

    @staticmethod
    def _open_key(path: typing.Optional[Path]) -> acmekit.util.PrivateKey:
        if not path:
            raise ConfigurationError("No account key was configured")

        try:
            with open(path, "rb") as pem:
                return acmekit.util.load_private_key(pem.read())
        except (OSError, ValueError, TypeError) as e:
            raise ConfigurationError(f"Bad private key in file {path}: {e}") from e

    @property
    def eab_credentials(self) -> ExternalAccountBindingCredentials:
        """The client's currently stored external account binding credentials

        Getter:
            Returns the client's currently stored external account binding credentials to be used on registration.
        Setter:
            Sets the client's stored external account binding credentials

            :param credentials: The kid and hmac_key
            :raises: :class:`ValueError` If the tuple does not contain exactly the kid and hmac_key.
        """
        return self._eab_credentials

    @eab_credentials.setter
    def eab_credentials(self, credentials: typing.Tuple[str, str]):
        if isinstance(credentials, tuple) and len(credentials) == 2:
            self._eab_credentials = ExternalAccountBindingCredentials(*credentials)
        else:
            raise ValueError("A tuple containing the kid and hmac_key is required")

    @property
    def directory(self) -> Directory:
        if self._directory is None:
            raise AcmeClientException("The client has not been started")
        return self._directory

    @property
    def account(self) -> typing.Optional[Account]:
        return self._account

    @property
    def account_uri(self) -> typing.Optional[str]:
        """The account's URL, i.e. the key ID that is used to sign requests."""
        return self._signer.kid

    @property
    def orchestrator(self) -> ChallengeOrchestrator:
        return self._orchestrator

    def key_authorization(self, token: str) -> str:
        return self._signer.key_authorization(token)

    def register_challenge_solver(self, challenge_solver: ChallengeSolver) -> None:
        """Registers a challenge solver with the client.

        The challenge solver is used to complete authorizations' challenges whose types it supports.

        :param challenge_solver: The challenge solver to register.
        :raises: :class:`ValueError` If a challenge solver is already registered that supports any of
            the challenge types that *challenge_solver* supports.
        """
        self._orchestrator.register_challenge_solver(challenge_solver)

    async def __aenter__(self) -> "AcmeClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self) -> None:
        """Closes the client's session.

        The client may not be used for requests anymore after it has been closed.
        """
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._signer.nonces.clear()

    async def start(self) -> None:
        """Starts the client's session.

        This method must be called after initialization and before
        making requests to an ACME server, as it fetches the ACME directory
        and registers the account key with the server or loads the existing account.

        It is advised to register at least one :class:`ChallengeSolver`
        using :meth:`register_challenge_solver` before starting the client.

        :raises:

            * :class:`~acmekit.client.exceptions.ConfigurationError` If the directory is not usable.
            * :class:`~acmekit.client.exceptions.TermsOfServiceRequired` If the terms of service have not
              been agreed to.
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": f"acmekit Client {__version__}"}
            )
            self._signer.session = self._session

        await self.bootstrap()

        if not self._orchestrator.challenge_solvers:
            logger.warning(
                "There is no challenge solver registered with the client. "
                "Certificate retrieval will likely fail."
            )

        await self.register_or_load()

    async def bootstrap(self) -> Directory:
        """Fetches the server's directory.

        :raises: :class:`~acmekit.client.exceptions.ConfigurationError` If the directory could not be
            parsed or lacks the *newAccount* or *newOrder* URL.
        :return: The directory.
        """
        if not self._directory_url:
            raise ConfigurationError("No directory URL was configured")

        async with self._session.get(self._directory_url, ssl=self._ssl_context) as resp:
            resp.raise_for_status()
            self._signer.nonces.push(resp.headers.get("Replay-Nonce"))
            try:
                directory = Directory.from_json(await resp.json(content_type=None))
            except (ValueError, josepy.errors.DeserializationError) as e:
                raise ConfigurationError(
                    f"Could not parse the directory at {self._directory_url}: {e}"
                ) from e

        missing = [
            name
            for name, url in (
                ("newNonce", directory.new_nonce),
                ("newAccount", directory.new_account),
                ("newOrder", directory.new_order),
            )
            if not url
        ]
        if missing:
            raise ConfigurationError(
                f"The directory at {self._directory_url} is missing {', '.join(missing)}"
            )

        self._directory = directory
        self._signer.new_nonce_url = directory.new_nonce
        logger.debug("Fetched directory from %s", self._directory_url)
        return directory

    async def register_or_load(self) -> Account:
        """Loads the account associated with the account key or registers a new one.

        If an account storage was given, a stored account is verified with the server and
        a newly registered account is written to the storage.

        :return: The account.
        """
        stored = None
        if self._account_storage is not None:
            stored = self._account_storage.load(self._directory_url, self._contact.get("email"))

        try:
            account = await self.account_lookup()
        except AccountDoesNotExist:
            if stored is not None:
                logger.warning(
                    "The stored account %s is unknown to the server, registering a new one",
                    stored.kid,
                )
            account = await self.account_register()
        else:
            logger.info("Using existing account %s", account.kid)

        if self._account_storage is not None:
            self._account_storage.save(self._directory_url, self._contact.get("email"), account)

        return account

    async def account_register(
        self,
        email: str = None,
        phone: str = None,
        kid: str = None,
        hmac_key: str = None,
        agree_tos: bool = None,
    ) -> Account:
        """Registers an account with the CA.

        Also sends the given contact information and stores the account internally
        for subsequent requests.
        If the account key is already registered, then the CA returns the existing account.

        It is usually not necessary to call this method as the account is
        registered or fetched automatically in :meth:`start`.

        :param email: The contact email
        :param phone: The contact phone number
        :param kid: The external account binding's key identifier
        :param hmac_key: The external account binding's symmetric encryption key
        :param agree_tos: Whether the terms of service are agreed to. Defaults to the configured value.
        :raises:

            * :class:`~acmekit.client.exceptions.TermsOfServiceRequired` If the CA has terms of service
              and they were not agreed to.
            * :class:`~acmekit.client.exceptions.ConfigurationError` If the CA requires an external account
              binding and no credentials were supplied.
            * :class:`~acmekit.client.exceptions.AcmeProblem` If the server rejects any of the contact
              information, the account key, or the external account binding.

        :return: The account.
        """
        agree_tos = self._cfg.agree_tos if agree_tos is None else agree_tos
        terms_of_service = self.directory.terms_of_service
        if terms_of_service and not agree_tos:
            raise TermsOfServiceRequired(terms_of_service)

        eab_credentials = (
            ExternalAccountBindingCredentials(kid, hmac_key)
            if kid and hmac_key
            else self.eab_credentials
        )

        try:
            external_account_binding = eab_credentials.create_eab(
                self._signer.key.public_key(), self.directory.new_account
            )
        except ValueError:
            external_account_binding = None
            if self.directory.external_account_required:
                raise ConfigurationError(
                    "The CA requires an external account binding, but the kid or the hmac_key is missing"
                )

        reg = acme.messages.Registration.from_data(
            email=email or self._contact.get("email"),
            phone=phone or self._contact.get("phone"),
            terms_of_service_agreed=True if terms_of_service else None,
            external_account_binding=external_account_binding,
        )

        # Otherwise the kid is sent instead of the JWK
        self._signer.kid = None
        resp, account_obj = await self._signer.signed_request(reg, self.directory.new_account)

        account = self._set_account(account_obj, resp.headers["Location"])
        if resp.status == 200:
            logger.info("Found existing account %s", account.kid)
        else:
            logger.info("Registered account %s", account.kid)
        return account

    async def account_lookup(self) -> Account:
        """Looks up an account using the account key.

        Also stores the account internally for subsequent requests.

        :raises: :class:`~acmekit.client.exceptions.AccountDoesNotExist` If no account associated
            with the account key exists.
        :return: The account.
        """
        reg = acme.messages.Registration.from_data(only_return_existing=True)

        self._signer.kid = None
        resp, account_obj = await self._signer.signed_request(reg, self.directory.new_account)
        return self._set_account(account_obj, resp.headers["Location"])

    async def account_update(self, **kwargs) -> Account:
        """Updates the account.

        :param kwargs: Kwargs that are passed to :class:`~acmekit.models.messages.AccountUpdate`'s constructor.
            May include a :class:`tuple` *contact* containing new contact URIs, *terms_of_service_agreed*
            or *status* set to :class:`~acmekit.models.AccountStatus.DEACTIVATED`.
        :raises: :class:`~acmekit.client.exceptions.AcmeProblem` If the server rejects the update.
        :return: The updated account.
        """
        if self._account is None:
            raise AcmeClientException("No account has been registered or looked up")

        update = messages.AccountUpdate(**kwargs)
        _, account_obj = await self._signer.signed_request(update, self._account.kid)
        return self._set_account(account_obj, self._account.kid)

    async def account_agree_tos(self) -> Account:
        """Agrees to the CA's current terms of service."""
        return await self.account_update(terms_of_service_agreed=True)

    async def account_deactivate(self) -> Account:
        """Deactivates the account. The account cannot be used anymore afterwards."""
        return await self.account_update(status=AccountStatus.DEACTIVATED)

    def _set_account(self, account_obj: dict, kid: str) -> Account:
        account_obj["kid"] = kid
        self._account = Account.from_json(account_obj)
        self._signer.kid = kid
        return self._account

    async def _fetch(self, url: str, cls):
        resp, obj = await self._signer.signed_request(None, url)
        obj["url"] = url
        return (
            cls.from_json(obj),
            acmekit.util.parse_retry_after(resp.headers.get("Retry-After")),
        )

    async def order_create(
        self,
        identifiers: typing.Union[typing.List[dict], typing.List[str]],
        not_before: datetime.datetime = None,
        not_after: datetime.datetime = None,
        profile: str = None,
    ) -> Order:
        """Creates a new order with the given identifiers.

        :param identifiers: :class:`list` of identifiers that the order should contain. May either be a list of
            domain names and IP addresses or a list of :class:`dict` containing the *type* and *value* (both
            :class:`str`) of each identifier.
        :param not_before: The requested *notBefore* field in the certificate.
        :param not_after: The requested *notAfter* field in the certificate.
        :param profile: The requested certificate profile.
        :raises: :class:`~acmekit.client.exceptions.AcmeProblem` If the server is unwilling to create an order
            with the requested identifiers.
        :return: The new order.
        """
        order = messages.NewOrder.from_data(
            identifiers=identifiers,
            not_before=not_before,
            not_after=not_after,
            profile=profile or self._cfg.profile,
        )

        resp, order_obj = await self._signer.signed_request(order, self.directory.new_order)
        order_obj["url"] = resp.headers["Location"]
        order = Order.from_json(order_obj)
        logger.info("Created order %s for %s", order.url, ", ".join(order.names))
        return order

    async def order_get(self, order_url: str) -> typing.Tuple[Order, typing.Optional[float]]:
        """Fetches an order given its URL.

        :param order_url: The order's URL.
        :raises: :class:`~acmekit.client.exceptions.AcmeProblem` If the order does not exist.
        :return: The fetched order and the server's *Retry-After* hint.
        """
        return await self._fetch(order_url, Order)

    async def authorization_get(
        self, authorization_url: str
    ) -> typing.Tuple[Authorization, typing.Optional[float]]:
        """Fetches an authorization given its URL.

        :param authorization_url: The authorization's URL.
        :raises: :class:`~acmekit.client.exceptions.AcmeProblem` If the authorization does not exist.
        :return: The fetched authorization and the server's *Retry-After* hint.
        """
        return await self._fetch(authorization_url, Authorization)

    async def authorizations_get(self, order: Order) -> typing.List[Authorization]:
        """Fetches all authorizations of the given order concurrently."""
        results = await asyncio.gather(
            *[self.authorization_get(url) for url in order.authorizations]
        )
        return [authorization for authorization, _ in results]

    async def authorization_deactivate(self, authorization_url: str) -> Authorization:
        """Deactivates the given authorization.

        `7.5.2. Deactivating an Authorization <https://tools.ietf.org/html/rfc8555#section-7.5.2>`_
        """
        update = messages.AuthorizationUpdate(status=AuthorizationStatus.DEACTIVATED)
        _, obj = await self._signer.signed_request(update, authorization_url)
        obj["url"] = authorization_url
        return Authorization.from_json(obj)

    async def challenge_get(
        self, challenge_url: str
    ) -> typing.Tuple[Challenge, typing.Optional[float]]:
        """Fetches a challenge given its URL.

        :param challenge_url: The challenge's URL.
        :return: The fetched challenge and the server's *Retry-After* hint.
        """
        resp, obj = await self._signer.signed_request(None, challenge_url)
        return (
            Challenge.from_json(obj),
            acmekit.util.parse_retry_after(resp.headers.get("Retry-After")),
        )

    async def challenge_validate(self, challenge_url: str) -> Challenge:
        """Tells the server that the given challenge is ready for validation.

        :param challenge_url: The challenge's URL.
        :return: The challenge as returned by the server.
        """
        _, obj = await self._signer.signed_request(None, challenge_url, post_as_get=False)
        return Challenge.from_json(obj)

    async def authorizations_complete(self, order: Order) -> typing.List[Authorization]:
        """Completes all authorizations associated with the given order.

        Authorizations that are already valid are skipped. For every pending authorization,
        exactly one challenge is selected and driven by a registered :class:`ChallengeSolver`.
        The authorizations are processed concurrently, except for solvers that must run sequentially.

        :param order: Order whose authorizations should be completed.
        :raises: :class:`~acmekit.client.exceptions.ObtainError` If any of the authorizations could not
            be completed. Carries the failure of every affected identifier.
        :return: The valid authorizations.
        """
        authorizations = await self.authorizations_get(order)

        failures: typing.Dict[str, Exception] = dict()
        valid = []
        selected = []
        for authorization in authorizations:
            domain = authorization.domain
            if authorization.is_valid:
                logger.info("[%s] Authorization already valid, skipping challenge", domain)
                valid.append(authorization)
            elif authorization.is_failed:
                failures[domain] = AuthorizationInvalid(domain, authorization.status)
            else:
                try:
                    challenge, solver = self._orchestrator.select(authorization)
                except NoUsableChallenge as e:
                    failures[domain] = e
                else:
                    selected.append((authorization, challenge, solver))

        if failures:
            raise ObtainError(failures)

        results = await asyncio.gather(
            *[
                self._orchestrator.drive(authorization, challenge, solver)
                for authorization, challenge, solver in selected
            ],
            return_exceptions=True,
        )

        for (authorization, _, _), result in zip(selected, results):
            if isinstance(result, Exception):
                failures[authorization.domain] = result
            elif isinstance(result, BaseException):
                raise result
            else:
                valid.append(result)

        if failures:
            raise ObtainError(failures)

        return valid

    async def solve(self, order: Order) -> Order:
        """Completes the order's authorizations and waits for the order to become *ready*.

        :param order: The order to solve.
        :raises:

            * :class:`~acmekit.client.exceptions.ObtainError` If any of the authorizations could not be completed.
            * :class:`~acmekit.client.exceptions.OrderInvalid` If the order became *invalid*.

        :return: The ready order.
        """
        await self.authorizations_complete(order)

        try:
            return await poll_until(
                self.order_get,
                order.url,
                done=lambda o: o.status in (OrderStatus.READY, OrderStatus.VALID),
                failed=lambda o: o.status == OrderStatus.INVALID,
                policy=self.ORDER_POLICY,
            )
        except PollingTimeout:
            raise
        except PollingException as e:
            raise OrderInvalid(e.obj, e.obj.error) from e

    async def _deactivate_authorizations(self, order: Order) -> None:
        for authorization_url in order.authorizations:
            try:
                authorization, _ = await self.authorization_get(authorization_url)
                if authorization.status == AuthorizationStatus.PENDING:
                    await self.authorization_deactivate(authorization_url)
                    logger.info("[%s] Deactivated authorization", authorization.domain)
            except Exception as e:
                logger.warning("Could not deactivate authorization %s: %s", authorization_url, e)

    async def order_finalize(
        self, order: Order, csr: x509.CertificateSigningRequest
    ) -> Order:
        """Finalizes the order using the given CSR and waits for the certificate to be issued.

        :param order: The *ready* order that is to be finalized.
        :param csr: The CSR that is submitted to apply for certificate issuance.
        :raises:

            * :class:`~acmekit.client.exceptions.AcmeClientException` If the order is not *ready*.
            * :class:`~acmekit.client.exceptions.AcmeProblem` If the server is unwilling to finalize the order.
            * :class:`~acmekit.client.exceptions.OrderInvalid` If the order became *invalid*.

        :return: The finalized order.
        """
        if order.status == OrderStatus.VALID and order.certificate:
            return order
        if order.status != OrderStatus.READY:
            raise AcmeClientException(
                f"Order {order.url} cannot be finalized in status {order.status.value}"
            )

        cert_req = messages.CertificateRequest(csr=csr)
        _, order_obj = await self._signer.signed_request(cert_req, order.finalize)
        order_obj["url"] = order.url
        finalized = Order.from_json(order_obj)

        if finalized.status == OrderStatus.VALID:
            return finalized

        try:
            return await poll_until(
                self.order_get,
                order.url,
                done=lambda o: o.status == OrderStatus.VALID,
                failed=lambda o: o.status == OrderStatus.INVALID,
                policy=self.FINALIZE_POLICY,
            )
        except PollingTimeout:
            raise
        except PollingException as e:
            raise OrderInvalid(e.obj, e.obj.error) from e

    async def _certificate_download(self, url: str) -> typing.Tuple[str, typing.Optional[str]]:
        resp, pem = await self._signer.signed_request(None, url)

        try:
            acmekit.util.load_pem_certificates(pem)
        except (ValueError, TypeError) as e:
            raise AcmeClientException(f"The server sent a malformed certificate at {url}: {e}")

        return pem, resp.links.get("up", {}).get("url")

    async def certificate_get(self, order: Order) -> str:
        """Downloads the given order's certificate.

        The chain is returned as served, it is only checked for PEM well-formedness.

        :param order: The order whose certificate to download.
        :raises: :class:`~acmekit.client.exceptions.AcmeClientException` If the order has not been finalized
            yet or the certificate is not well-formed.
        :return: The order's certificate chain encoded as PEM.
        """
        if not order.certificate:
            raise AcmeClientException("This order has not been finalized")

        pem, _ = await self._certificate_download(order.certificate)
        return pem

    async def certificate_chain_get(
        self, certificate_url: str, bundle: bool = True
    ) -> typing.Tuple[str, typing.Optional[str]]:
        """Downloads a certificate and its issuer.

        If the server sends only the leaf, the issuer is fetched from the *up* link.

        :param certificate_url: The certificate's URL.
        :param bundle: Whether to append the fetched issuer to the returned certificate.
        :return: The certificate and the issuer chain, both encoded as PEM.
        """
        pem, up_url = await self._certificate_download(certificate_url)

        certificates = acmekit.util.load_pem_certificates(pem)
        if len(certificates) > 1:
            issuer = "".join(acmekit.util.certificate_to_pem(c) for c in certificates[1:])
            return pem, issuer

        if not up_url:
            return pem, None

        issuer, _ = await self._certificate_download(str(up_url))
        if bundle:
            pem = pem.rstrip("\n") + "\n" + issuer
        return pem, issuer

    async def certificate_revoke(
        self,
        certificate: x509.Certificate,
        reason: messages.RevocationReason = None,
    ) -> bool:
        """Revokes the given certificate.

        :param certificate: The certificate to revoke.
        :param reason: Optional reason for revocation.
        :raises: :class:`~acmekit.client.exceptions.AcmeProblem` If the revocation did not succeed.
        :return: *True* if the revocation succeeded.
        """
        if not self.directory.revoke_cert:
            raise ConfigurationError("The CA does not support certificate revocation")

        cert_rev = messages.Revocation(certificate=certificate, reason=reason)
        resp, _ = await self._signer.signed_request(cert_rev, self.directory.revoke_cert)

        return resp.status == 200

    async def _issue(
        self,
        names: typing.List[str],
        csr: x509.CertificateSigningRequest,
        private_key: typing.Optional[acmekit.util.PrivateKey],
        bundle: bool,
    ) -> CertificateResource:
        order = await self.order_create(names)

        try:
            order = await self.solve(order)
        except Exception:
            await self._deactivate_authorizations(order)
            raise

        order = await self.order_finalize(order, csr)
        certificate, issuer = await self.certificate_chain_get(order.certificate, bundle)
        logger.info("[%s] Server responded with a certificate", names[0])

        return CertificateResource(
            domain=names[0],
            cert_url=order.certificate,
            certificate=certificate,
            issuer_certificate=issuer,
            private_key=acmekit.util.private_key_to_pem(private_key) if private_key else None,
            csr=csr.public_bytes(serialization.Encoding.PEM),
            order_url=order.url,
        )

    async def obtain(
        self,
        domains: typing.List[str],
        private_key: acmekit.util.PrivateKey = None,
        must_staple: bool = None,
        bundle: bool = None,
        timeout: float = None,
    ) -> CertificateResource:
        """Obtains a certificate for the given domains.

        The first domain becomes the certificate's common name. No certificate is issued unless
        every domain was authorized.

        :param domains: The domains and IP addresses the certificate is requested for.
        :param private_key: The certificate key. A key of the configured type is generated if omitted.
        :param must_staple: Whether to request the OCSP Must-Staple extension.
        :param bundle: Whether to append the issuer if the server only sends the leaf.
        :param timeout: Optional deadline in seconds for the whole issuance.
        :raises:

            * :class:`~acmekit.client.exceptions.ObtainError` If any of the domains could not be authorized.
            * :class:`asyncio.TimeoutError` If the deadline passed.

        :return: The issued certificate.
        """
        names = acmekit.util.sanitize_domains(domains)
        if not names:
            raise ValueError("No domains to obtain a certificate for")

        must_staple = self._cfg.must_staple if must_staple is None else must_staple
        bundle = self._cfg.bundle if bundle is None else bundle

        if private_key is None:
            private_key = acmekit.util.generate_private_key(self._cfg.key_type)

        csr = acmekit.util.generate_csr(
            names[0], private_key, names=names, must_staple=must_staple
        )

        logger.info("[%s] Obtaining bundled SAN certificate", ", ".join(names))
        return await asyncio.wait_for(
            self._issue(names, csr, private_key, bundle), timeout
        )

    async def obtain_for_csr(
        self,
        csr: x509.CertificateSigningRequest,
        bundle: bool = None,
        timeout: float = None,
    ) -> CertificateResource:
        """Obtains a certificate for an existing CSR.

        :param csr: The CSR. Its common name and SANs determine the order's identifiers.
        :param bundle: Whether to append the issuer if the server only sends the leaf.
        :param timeout: Optional deadline in seconds for the whole issuance.
        :raises: :class:`~acmekit.client.exceptions.ObtainError` If any of the names could not be authorized.
        :return: The issued certificate. Its private key is *None*.
        """
        names = acmekit.util.names_of(csr, lower=True)
        if not names:
            raise ValueError("The CSR does not contain any names")

        bundle = self._cfg.bundle if bundle is None else bundle

        logger.info("[%s] Obtaining certificate for CSR", ", ".join(names))
        return await asyncio.wait_for(self._issue(names, csr, None, bundle), timeout)

    async def renew(
        self,
        resource: CertificateResource,
        must_staple: bool = None,
        bundle: bool = None,
        timeout: float = None,
    ) -> CertificateResource:
        """Obtains a new certificate for the names of an existing one.

        If the resource carries a CSR, it is submitted again, so the certificate key stays the same.
        Otherwise the names of the certificate are ordered again using the stored key, if any.

        :param resource: The certificate to renew.
        :param must_staple: Whether to request the OCSP Must-Staple extension. Only used if there is no CSR.
        :return: The renewed certificate.
        """
        leaf = acmekit.util.load_pem_certificates(resource.certificate)[0]
        logger.info(
            "[%s] Trying renewal with %d hours remaining",
            resource.domain,
            (leaf.not_valid_after_utc - datetime.datetime.now(datetime.timezone.utc))
            // datetime.timedelta(hours=1),
        )

        if resource.csr is not None:
            csr = x509.load_pem_x509_csr(resource.csr)
            renewed = await self.obtain_for_csr(csr, bundle=bundle, timeout=timeout)
            renewed.private_key = resource.private_key
            return renewed

        private_key = None
        if resource.private_key is not None:
            private_key = acmekit.util.load_private_key(resource.private_key)

        return await self.obtain(
            resource.names,
            private_key=private_key,
            must_staple=must_staple,
            bundle=bundle,
            timeout=timeout,
        )
