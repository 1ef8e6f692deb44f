"""Generic polling of ACME resources.

Challenges, authorizations and orders are all polled the same way: the resource is fetched
until a predicate holds, a failure predicate holds or the deadline passes.
"""
import asyncio
import logging
import typing
from dataclasses import dataclass

from acmekit.client.exceptions import PollingException, PollingTimeout

logger = logging.getLogger(__name__)

T = typing.TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Describes how often and for how long a resource is polled."""

    interval: float = 5.0
    """Delay in seconds between two fetches, unless the server sends a *Retry-After* header."""
    timeout: float = 300.0
    """Total time in seconds after which polling is given up."""

    def __post_init__(self):
        if self.interval < 0 or self.timeout <= 0:
            raise ValueError(
                f"Invalid retry policy: interval={self.interval}, timeout={self.timeout}"
            )


DEFAULT_POLICY = RetryPolicy()


async def poll_until(
    fetch: typing.Callable[..., typing.Awaitable[typing.Tuple[T, typing.Optional[float]]]],
    *args,
    done: typing.Callable[[T], bool],
    failed: typing.Callable[[T], bool] = None,
    policy: RetryPolicy = DEFAULT_POLICY,
) -> T:
    """Fetches a resource until *done* holds for it.

    :param fetch: Coroutine function that returns the resource and the server's *Retry-After* hint.
    :param args: The arguments to pass to *fetch*.
    :param done: Predicate that stops polling successfully.
    :param failed: Predicate that stops polling unsuccessfully.
    :param policy: The interval and timeout to use. A *Retry-After* hint overrides the interval.
    :raises:

        * :class:`~acmekit.client.exceptions.PollingException` If *failed* became True.
        * :class:`~acmekit.client.exceptions.PollingTimeout` If the timeout elapsed first.

    :return: The last fetched resource.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + policy.timeout
    tries = 0

    while True:
        result, retry_after = await fetch(*args)
        tries += 1

        if done(result):
            return result

        if failed is not None and failed(result):
            raise PollingException(
                result,
                f"Polling unsuccessful: {fetch.__name__}{args}, {failed.__name__} became True",
            )

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise PollingTimeout(
                result,
                policy.timeout,
                f"Polling timed out after {tries} tries: {fetch.__name__}{args}",
            )

        delay = policy.interval if retry_after is None else retry_after
        logger.debug(
            "Polling %s%s again in %.1fs (%.1fs remaining)",
            fetch.__name__,
            args,
            delay,
            remaining,
        )
        await asyncio.sleep(min(delay, remaining))
