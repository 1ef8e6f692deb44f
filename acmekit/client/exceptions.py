import typing

import acme.messages


def problem_code(error: acme.messages.Error) -> typing.Optional[str]:
    """The error's ACME code, i.e. its type without the namespace prefix.

    Unlike :attr:`acme.messages.Error.code` this also covers codes that are unknown to the acme package.
    """
    if error.typ and str(error.typ).startswith(acme.messages.ERROR_PREFIX):
        return str(error.typ)[len(acme.messages.ERROR_PREFIX) :]
    return None


class AcmeClientException(Exception):
    """General ACME client exception."""

    pass


class ConfigurationError(AcmeClientException, ValueError):
    """Raised for unusable configurations, e.g. a bad directory, a key/algorithm mismatch
    or a missing challenge solver. Never retried."""

    pass


class AcmeProblem(AcmeClientException):
    """Raised if the server responded with an RFC 7807 problem document.

    `6.7. Errors <https://tools.ietf.org/html/rfc8555#section-6.7>`_
    """

    def __init__(
        self, error: acme.messages.Error, status: int = None, url: str = None, *args
    ):
        super().__init__(error, *args)
        self.error: acme.messages.Error = error
        """The server's problem document, verbatim."""
        self.status = status
        """The HTTP status code of the response."""
        self.url = url
        """The URL of the request that failed."""

    @property
    def code(self) -> typing.Optional[str]:
        return problem_code(self.error)

    def __str__(self):
        return f"{self.error} (HTTP {self.status}, {self.url})"


class BadNonce(AcmeProblem):
    """Raised if the server rejected the request's nonce twice in a row."""

    pass


class RateLimited(AcmeProblem):
    """Raised if the server refused the request due to a rate limit or because it is busy.

    The client does not retry; the caller decides when to try again.
    """

    def __init__(self, error, status=None, url=None, retry_after: float = None):
        super().__init__(error, status, url)
        self.retry_after = retry_after
        """The server's *Retry-After* hint in seconds, if any."""

    def __str__(self):
        hint = f", retry after {self.retry_after:.0f}s" if self.retry_after is not None else ""
        return f"{super().__str__()}{hint}"


class AccountDoesNotExist(AcmeProblem):
    """Raised if no account exists for the client's key."""

    pass


class TermsOfServiceRequired(AcmeClientException):
    """Raised if the CA requires agreement to its terms of service and the caller has not agreed yet."""

    def __init__(self, terms_of_service: str, error: acme.messages.Error = None):
        super().__init__(terms_of_service)
        self.terms_of_service = terms_of_service
        """URL of the terms of service that have to be agreed to."""
        self.error = error

    def __str__(self):
        return f"The terms of service must be agreed to: {self.terms_of_service}"


class CouldNotCompleteChallenge(AcmeClientException):
    """Exception that is raised if completion of the challenge for a specific identifier failed."""

    def __init__(
        self,
        identifier: str,
        challenge=None,
        error: acme.messages.Error = None,
        *args,
    ):
        super().__init__(identifier, *args)
        self.identifier = identifier
        """The identifier whose authorization could not be completed."""
        self.challenge = challenge
        """The challenge whose completion was unsuccessful, if one was selected."""
        self.error: typing.Optional[acme.messages.Error] = error
        """The server's problem document, if the server reported one."""

    def _describe(self) -> str:
        return "could not complete challenge"

    def __str__(self):
        msg = f"[{self.identifier}] {self._describe()}"
        if self.error is not None:
            msg += f": {self.error}"
        elif self.__cause__ is not None:
            msg += f": {self.__cause__}"
        return msg


class NoUsableChallenge(CouldNotCompleteChallenge, ConfigurationError):
    """Raised if none of the offered challenges has a registered solver."""

    def __init__(self, identifier: str, offered: typing.Iterable[str] = ()):
        super().__init__(identifier)
        self.offered = list(offered)

    def _describe(self) -> str:
        return (
            "no usable challenge, the server offered "
            f"{', '.join(self.offered) or 'none'} but there is no solver for any of them"
        )


class ProviderError(CouldNotCompleteChallenge):
    """Raised if the challenge solver failed to present the challenge response."""

    def _describe(self) -> str:
        return f"challenge solver failed to present {self.challenge.type if self.challenge else 'the'} challenge"


class ValidationError(CouldNotCompleteChallenge):
    """Base class of failures reported for the server-side validation step."""

    pass


class ChallengeInvalid(ValidationError):
    """Raised if the server reported the challenge (or its authorization) as *invalid*."""

    def _describe(self) -> str:
        return "the server reported the challenge as invalid"


class AuthorizationInvalid(ValidationError):
    """Raised if the authorization ended up in a state other than *valid*."""

    def __init__(self, identifier, status, error=None):
        super().__init__(identifier, None, error)
        self.status = status

    def _describe(self) -> str:
        return f"authorization has status {self.status.value}"


class PropagationTimeout(ValidationError):
    """Raised if the server did not reach a decision within the solver's timeout.

    Distinct from :class:`ChallengeInvalid`: the server never reported a failure.
    """

    def __init__(self, identifier, challenge=None, timeout: float = None):
        super().__init__(identifier, challenge)
        self.timeout = timeout

    def _describe(self) -> str:
        return f"validation did not complete within {self.timeout:.0f}s"


class OrderInvalid(AcmeClientException):
    """Raised if the order became *invalid* or ended up in an unexpected state."""

    def __init__(self, order, error: acme.messages.Error = None, *args):
        super().__init__(order, *args)
        self.order = order
        self.error = error

    def __str__(self):
        msg = f"Order {self.order.url} has status {self.order.status.value}"
        if self.error is not None:
            msg += f": {self.error}"
        return msg


class ObtainError(AcmeClientException):
    """Aggregates the per-identifier failures of a certificate request.

    No certificate is issued if any identifier fails.
    """

    def __init__(self, failures: typing.Dict[str, Exception]):
        super().__init__(failures)
        self.failures = failures
        """Mapping of identifier to the exception that caused its failure."""

    def __str__(self):
        return "error: one or more domains had a problem:\n" + "\n".join(
            f"[{identifier}] {error}" for identifier, error in sorted(self.failures.items())
        )


class PollingException(AcmeClientException):
    """Exception that is used internally to communicate polling timeouts or errors."""

    def __init__(self, obj, *args):
        super().__init__(*args)
        self.obj = obj


class PollingTimeout(PollingException):
    """Raised by :func:`~acmekit.client.polling.poll_until` if the policy's timeout elapsed."""

    def __init__(self, obj, timeout: float, *args):
        super().__init__(obj, *args)
        self.timeout = timeout
