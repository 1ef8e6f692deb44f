import pytest

from acmekit.client import RetryPolicy, poll_until
from acmekit.client.exceptions import PollingException, PollingTimeout


class Resource:
    def __init__(self, states, retry_after=None):
        self.states = list(states)
        self.retry_after = retry_after
        self.fetches = 0

    async def fetch(self, name):
        self.fetches += 1
        state = self.states.pop(0) if len(self.states) > 1 else self.states[0]
        return f"{name}:{state}", self.retry_after


def is_done(result):
    return result.endswith(":valid")


def is_failed(result):
    return result.endswith(":invalid")


@pytest.mark.asyncio
async def test_poll_until_done():
    resource = Resource(["pending", "processing", "valid"])
    result = await poll_until(
        resource.fetch, "order", done=is_done, failed=is_failed, policy=RetryPolicy(0.01, 1.0)
    )
    assert result == "order:valid"
    assert resource.fetches == 3


@pytest.mark.asyncio
async def test_poll_until_failed():
    resource = Resource(["pending", "invalid"])
    with pytest.raises(PollingException) as excinfo:
        await poll_until(
            resource.fetch, "order", done=is_done, failed=is_failed, policy=RetryPolicy(0.01, 1.0)
        )

    assert not isinstance(excinfo.value, PollingTimeout)
    assert excinfo.value.obj == "order:invalid"


@pytest.mark.asyncio
async def test_poll_until_timeout():
    resource = Resource(["pending"])
    with pytest.raises(PollingTimeout) as excinfo:
        await poll_until(resource.fetch, "order", done=is_done, policy=RetryPolicy(0.02, 0.1))

    assert excinfo.value.timeout == 0.1
    assert excinfo.value.obj == "order:pending"
    assert 2 <= resource.fetches <= 10


@pytest.mark.asyncio
async def test_poll_until_honours_retry_after():
    resource = Resource(["pending"], retry_after=10.0)
    with pytest.raises(PollingTimeout):
        await poll_until(resource.fetch, "order", done=is_done, policy=RetryPolicy(0.0, 0.1))

    # the server's hint is capped by the remaining time
    assert 2 <= resource.fetches <= 3


@pytest.mark.parametrize("interval, timeout", [(-1, 10), (1, 0), (1, -5)])
def test_retry_policy_invalid(interval, timeout):
    with pytest.raises(ValueError):
        RetryPolicy(interval, timeout)
