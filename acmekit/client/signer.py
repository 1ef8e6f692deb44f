import asyncio
import collections
import logging
import threading
import typing

import acme.messages
import aiohttp
import josepy
from acme import jws
from cryptography.hazmat.primitives.asymmetric import rsa, ec

from acmekit.client.exceptions import (
    AccountDoesNotExist,
    AcmeClientException,
    AcmeProblem,
    BadNonce,
    ConfigurationError,
    problem_code,
    RateLimited,
    TermsOfServiceRequired,
)
from acmekit.util import PrivateKey, parse_retry_after

logger = logging.getLogger(__name__)

ALGORITHMS = {
    "RS256": josepy.jwa.RS256,
    "RS384": josepy.jwa.RS384,
    "RS512": josepy.jwa.RS512,
    "ES256": josepy.jwa.ES256,
    "ES384": josepy.jwa.ES384,
    "ES512": josepy.jwa.ES512,
}

_EC_ALGORITHMS = {
    256: josepy.jwa.ES256,
    384: josepy.jwa.ES384,
    521: josepy.jwa.ES512,
}


def open_key(
    private_key: PrivateKey, alg: str = None
) -> typing.Tuple[josepy.jwk.JWK, josepy.jwa.JWASignature]:
    """Wraps the given private key in a JWK and determines the signature algorithm.

    :param private_key: The account's RSA or EC private key.
    :param alg: The name of an explicitly requested algorithm, e.g. *ES256*.
    :raises: :class:`~acmekit.client.exceptions.ConfigurationError` If the key type is not supported
        or the requested algorithm cannot be used with the key.
    :return: The key and the signature algorithm to use with it.
    """
    if isinstance(private_key, rsa.RSAPrivateKey):
        key = josepy.jwk.JWKRSA(key=private_key)
        allowed = {josepy.jwa.RS256, josepy.jwa.RS384, josepy.jwa.RS512}
        default = josepy.jwa.RS256
    elif isinstance(private_key, ec.EllipticCurvePrivateKey):
        key = josepy.jwk.JWKEC(key=private_key)
        try:
            default = _EC_ALGORITHMS[private_key.curve.key_size]
        except KeyError:
            raise ConfigurationError(
                f"Unsupported elliptic curve {private_key.curve.name}"
            )
        allowed = {default}
    else:
        raise ConfigurationError(f"Unsupported key type {type(private_key).__name__}")

    if alg is None:
        return key, default

    try:
        requested = ALGORITHMS[alg.upper()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown signature algorithm {alg}. Valid options: {', '.join(ALGORITHMS)}."
        )

    if requested not in allowed:
        raise ConfigurationError(
            f"The signature algorithm {alg} cannot be used with a {type(private_key).__name__}"
        )

    return key, requested


class NoncePool:
    """Thread-safe pool of unused anti-replay nonces.

    Every nonce is handed out at most once.
    """

    def __init__(self):
        self._nonces = collections.deque()
        self._lock = threading.Lock()

    def push(self, nonce: typing.Optional[str]) -> None:
        if not nonce:
            return

        with self._lock:
            if nonce not in self._nonces:
                self._nonces.append(nonce)

    def pop(self) -> typing.Optional[str]:
        """Removes and returns the oldest nonce, or *None* if the pool is empty."""
        with self._lock:
            try:
                return self._nonces.popleft()
            except IndexError:
                return None

    def clear(self) -> None:
        with self._lock:
            self._nonces.clear()

    def __len__(self):
        with self._lock:
            return len(self._nonces)


def problem_from_response(
    error: acme.messages.Error, resp: aiohttp.ClientResponse
) -> AcmeClientException:
    """Maps a problem document to the matching exception type."""
    url = str(resp.url)
    code = problem_code(error)

    if code == "badNonce":
        return BadNonce(error, resp.status, url)

    if code == "rateLimited" or resp.status in (429, 503):
        return RateLimited(
            error,
            resp.status,
            url,
            retry_after=parse_retry_after(resp.headers.get("Retry-After")),
        )

    if code == "accountDoesNotExist":
        return AccountDoesNotExist(error, resp.status, url)

    if code == "userActionRequired":
        if terms_of_service := resp.links.get("terms-of-service", {}).get("url"):
            return TermsOfServiceRequired(str(terms_of_service), error)

    return AcmeProblem(error, resp.status, url)


class RequestSigner:
    """Signs ACME requests and keeps the pool of nonces that the signatures need.

    The protected header embeds the account's full public key until :attr:`kid`
    is set, i.e. until the account URL is known. Afterwards it carries the *kid*.
    """

    NONCE_FETCH_RETRIES = 3
    """The number of attempts at fetching a fresh nonce, the only retried transport call."""
    NONCE_FETCH_BACKOFF = 1.0
    """The initial delay in seconds between nonce fetch attempts. Doubles after each attempt."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        private_key: PrivateKey,
        *,
        alg: str = None,
        new_nonce_url: str = None,
        ssl_context=None,
    ):
        self.session = session
        self._ssl_context = ssl_context
        self.key, self.alg = open_key(private_key, alg)
        self.new_nonce_url = new_nonce_url
        self.kid: typing.Optional[str] = None
        """The account URL. *None* until the account has been registered or looked up."""
        self.nonces = NoncePool()

    def thumbprint(self) -> str:
        """The base64url-encoded `RFC 7638 <https://tools.ietf.org/html/rfc7638>`_ thumbprint of the account key."""
        return josepy.b64.b64encode(self.key.public_key().thumbprint()).decode()

    def key_authorization(self, token: str) -> str:
        """Computes the key authorization for the given challenge token.

        `8.1. Key Authorizations <https://tools.ietf.org/html/rfc8555#section-8.1>`_
        """
        return f"{token}.{self.thumbprint()}"

    async def fetch_nonce(self) -> str:
        """Requests a fresh nonce from the server's *newNonce* resource.

        Transport failures are retried with exponential backoff.

        :raises:

            * :class:`aiohttp.ClientError` If the last attempt failed on the transport level.
            * :class:`~acmekit.client.exceptions.AcmeClientException` If the server never sent a nonce.
        """
        if not self.new_nonce_url:
            raise ConfigurationError("The directory does not contain a newNonce URL")

        delay = self.NONCE_FETCH_BACKOFF
        for attempt in range(1, self.NONCE_FETCH_RETRIES + 1):
            try:
                async with self.session.head(
                    self.new_nonce_url, ssl=self._ssl_context
                ) as resp:
                    if nonce := resp.headers.get("Replay-Nonce"):
                        logger.debug("Fetched new nonce %s", nonce)
                        return nonce
                    logger.warning(
                        "No Replay-Nonce in response from %s (HTTP %d), attempt %d/%d",
                        self.new_nonce_url,
                        resp.status,
                        attempt,
                        self.NONCE_FETCH_RETRIES,
                    )
            except aiohttp.ClientError as e:
                if attempt == self.NONCE_FETCH_RETRIES:
                    logger.error("HEAD %s failed: %s", self.new_nonce_url, e)
                    raise
                logger.warning(
                    "HEAD %s failed, attempt %d/%d: %s",
                    self.new_nonce_url,
                    attempt,
                    self.NONCE_FETCH_RETRIES,
                    e,
                )

            if attempt < self.NONCE_FETCH_RETRIES:
                await asyncio.sleep(delay)
                delay *= 2

        raise AcmeClientException(
            f"The server did not provide a nonce at {self.new_nonce_url}"
        )

    async def _get_nonce(self, fresh=False) -> str:
        if not fresh and (nonce := self.nonces.pop()):
            return nonce
        return await self.fetch_nonce()

    def _wrap_in_jws(
        self,
        obj: typing.Optional[josepy.JSONDeSerializable],
        nonce: str,
        url: str,
        post_as_get: bool,
    ) -> str:
        if post_as_get:
            jobj = obj.json_dumps(indent=2).encode() if obj is not None else b""
        else:
            jobj = b"{}"

        kwargs = {"nonce": josepy.b64.b64decode(nonce), "url": url}
        if self.kid is not None:
            kwargs["kid"] = self.kid

        return jws.JWS.sign(jobj, key=self.key, alg=self.alg, **kwargs).json_dumps(
            indent=2
        )

    async def signed_request(
        self,
        obj: typing.Optional[josepy.JSONDeSerializable],
        url: str,
        post_as_get: bool = True,
    ) -> typing.Tuple[aiohttp.ClientResponse, typing.Any]:
        """Signs the given message and POSTs it to the given URL.

        :param obj: The message to send. *None* results in a POST-as-GET request.
        :param url: The target URL, which is also embedded in the protected header.
        :param post_as_get: False to send an empty JSON object instead of *obj*,
            which signals readiness for challenge validation.
        :raises:

            * :class:`~acmekit.client.exceptions.BadNonce` If the server rejected the nonce twice.
            * :class:`~acmekit.client.exceptions.AcmeProblem` If the server responded with a problem document.
            * :class:`aiohttp.ClientResponseError` If the server responded with any other error.
            * :class:`aiohttp.ClientError` On transport failures.

        :return: The response and its parsed JSON body or text.
        """
        try:
            payload = self._wrap_in_jws(obj, await self._get_nonce(), url, post_as_get)
            return await self._make_request(payload, url)
        except BadNonce as e:
            logger.info("Server rejected the nonce for %s, retrying once: %s", url, e)

        payload = self._wrap_in_jws(
            obj, await self._get_nonce(fresh=True), url, post_as_get
        )
        return await self._make_request(payload, url)

    async def _make_request(self, payload: str, url: str):
        try:
            async with self.session.post(
                url,
                data=payload,
                headers={"Content-Type": "application/jose+json"},
                ssl=self._ssl_context,
            ) as resp:
                # Harvest the nonce before anything else, error responses carry one as well.
                self.nonces.push(resp.headers.get("Replay-Nonce"))

                if resp.content_type == "application/problem+json":
                    raise problem_from_response(
                        acme.messages.Error.from_json(await resp.json(content_type=None)),
                        resp,
                    )
                elif resp.status < 200 or resp.status >= 300:
                    raise aiohttp.ClientResponseError(
                        resp.request_info,
                        resp.history,
                        status=resp.status,
                        message=resp.reason or "",
                        headers=resp.headers,
                    )
                elif resp.content_type == "application/json":
                    data = await resp.json()
                else:
                    data = await resp.text()

                logger.debug(data)
                return resp, data
        except aiohttp.ClientError as e:
            logger.error("POST %s failed: %s", url, e)
            raise
