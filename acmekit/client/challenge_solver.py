import abc
import logging
import typing

from pydantic_settings import BaseSettings

from acmekit.models import ChallengeType
from acmekit.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


class ChallengeSolver(abc.ABC):
    """An abstract base class for challenge solvers, i.e. the providers that make challenge
    responses reachable for the CA.

    All challenge solver implementations must implement the methods :meth:`present` and :meth:`cleanup`.
    Implementations must also be registered with the plugin registry via
    :meth:`~acmekit.plugin_base.PluginRegistry.register_plugin`, so that the CLI script knows which configuration
    option corresponds to which challenge solver class.

    Solvers may be called concurrently for different identifiers unless :attr:`SEQUENTIAL` is set.
    """

    SUPPORTED_CHALLENGES: typing.FrozenSet[ChallengeType] = frozenset()
    """The types of challenges that the challenge solver implementation supports."""
    SEQUENTIAL: bool = False
    """Whether the solver can only handle one challenge at a time, e.g. because it binds a fixed port."""
    TIMEOUT: float = 300.0
    """Default upper bound in seconds on the validation of one challenge."""
    POLLING_INTERVAL: float = 5.0
    """Default interval in seconds between two challenge status checks."""

    class Config(BaseSettings, extra="forbid"):
        type: typing.Literal["none"] = "none"

    def __init__(self, cfg: Config = None):
        pass

    def timeout(self) -> typing.Tuple[float, float]:
        """Returns the timeout and the polling interval to use while waiting for validation.

        Override to derive the values from the solver's configuration.
        """
        return self.TIMEOUT, self.POLLING_INTERVAL

    @abc.abstractmethod
    async def present(self, domain: str, token: str, key_authorization: str) -> None:
        """Makes the challenge response available to the CA.

        This method should not return before the response can be validated, i.e. a DNS
        record must have propagated or a server must be listening.

        :param domain: The domain that is being validated. Prefixed with "\\*." for wildcard authorizations.
        :param token: The challenge's token.
        :param key_authorization: The key authorization, or the issue-value for *dns-persist-01*.
        :raises: Any exception if the response could not be provisioned.
        """
        pass

    @abc.abstractmethod
    async def cleanup(self, domain: str, token: str, key_authorization: str) -> None:
        """Removes what :meth:`present` provisioned.

        It is called once validation is over, whatever the outcome, and also if :meth:`present` failed.
        It should therefore silently return if there is nothing to clean up.

        :param domain: The domain that was validated.
        :param token: The challenge's token.
        :param key_authorization: The value that was passed to :meth:`present`.
        """
        pass


PluginRegistry.get_registry(ChallengeSolver)


@PluginRegistry.register_plugin("dummy")
class DummySolver(ChallengeSolver):
    """Dummy challenge solver that does not actually provision anything.

    Useful against test CAs that skip validation.
    """

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_01, ChallengeType.HTTP_01])
    """The types of challenges that the solver supports."""

    class Config(ChallengeSolver.Config):
        type: typing.Literal["dummy"] = "dummy"

    async def present(self, domain: str, token: str, key_authorization: str) -> None:
        logger.debug("(not) presenting challenge for %s, token %s", domain, token)

    async def cleanup(self, domain: str, token: str, key_authorization: str) -> None:
        logger.debug("(not) cleaning up challenge for %s, token %s", domain, token)
