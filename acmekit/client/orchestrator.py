import asyncio
import contextlib
import datetime
import logging
import typing

import dns.exception

from acmekit import dns01
from acmekit.client.challenge_solver import ChallengeSolver
from acmekit.client.exceptions import (
    AuthorizationInvalid,
    ChallengeInvalid,
    CouldNotCompleteChallenge,
    NoUsableChallenge,
    PollingException,
    PollingTimeout,
    PropagationTimeout,
    ProviderError,
)
from acmekit.client.polling import RetryPolicy, poll_until
from acmekit.models import Authorization, Challenge, ChallengeStatus, ChallengeType

logger = logging.getLogger(__name__)

CHALLENGE_PREFERENCE = (
    ChallengeType.TLS_ALPN_01,
    ChallengeType.HTTP_01,
    ChallengeType.DNS_01,
    ChallengeType.DNS_PERSIST_01,
)
"""The order in which challenge types are chosen if an authorization offers more than one."""


class ChallengeOrchestrator:
    """Drives challenges through their life cycle using the registered challenge solvers.

    The mapping of challenge types to solvers is static once issuance has started.
    Solvers that declare :attr:`~acmekit.client.challenge_solver.ChallengeSolver.SEQUENTIAL`
    are never used for two challenges at the same time, all others run concurrently.

    :param client: The :class:`~acmekit.client.AcmeClient` that talks to the CA.
    :param issuer_domain_name: The issuer domain name to use for *dns-persist-01* challenges.
        Defaults to the first one offered by the CA.
    :param persist_until: Optional expiry of *dns-persist-01* records.
    """

    def __init__(
        self,
        client,
        *,
        issuer_domain_name: str = None,
        persist_until: datetime.datetime = None,
    ):
        self._client = client
        self._challenge_solvers: typing.Dict[ChallengeType, ChallengeSolver] = dict()
        self._locks: typing.Dict[int, asyncio.Lock] = dict()
        self.issuer_domain_name = issuer_domain_name
        self.persist_until = persist_until

    @property
    def challenge_solvers(self) -> typing.Mapping[ChallengeType, ChallengeSolver]:
        return self._challenge_solvers

    def register_challenge_solver(self, challenge_solver: ChallengeSolver) -> None:
        """Registers a challenge solver for all challenge types that it supports.

        :param challenge_solver: The challenge solver to register.
        :raises: :class:`ValueError` If a challenge solver is already registered that supports any of
            the challenge types that *challenge_solver* supports.
        """
        for challenge_type in challenge_solver.SUPPORTED_CHALLENGES:
            if self._challenge_solvers.get(challenge_type):
                raise ValueError(
                    f"A challenge solver for type {challenge_type.value} is already registered"
                )

        for challenge_type in challenge_solver.SUPPORTED_CHALLENGES:
            self._challenge_solvers[challenge_type] = challenge_solver

        if challenge_solver.SEQUENTIAL:
            self._locks.setdefault(id(challenge_solver), asyncio.Lock())

    def resolve_provider(
        self, challenge_type: typing.Union[ChallengeType, str]
    ) -> typing.Optional[ChallengeSolver]:
        """Returns the solver registered for the given challenge type, if any."""
        challenge_type = ChallengeType.parse(challenge_type)
        if challenge_type is None:
            return None
        return self._challenge_solvers.get(challenge_type)

    def select(self, authorization: Authorization) -> typing.Tuple[Challenge, ChallengeSolver]:
        """Selects exactly one challenge of the authorization that can be solved.

        :param authorization: A pending authorization.
        :raises: :class:`~acmekit.client.exceptions.NoUsableChallenge` If no offered challenge
            has a registered solver.
        :return: The selected challenge and its solver.
        """
        usable = [
            challenge
            for challenge in authorization.challenges
            if challenge.challenge_type is not None
            and challenge.challenge_type in self._challenge_solvers
        ]
        if not usable:
            raise NoUsableChallenge(
                authorization.domain,
                [challenge.type for challenge in authorization.challenges],
            )

        challenge = min(
            usable, key=lambda c: CHALLENGE_PREFERENCE.index(c.challenge_type)
        )
        solver = self._challenge_solvers[challenge.challenge_type]
        logger.info(
            "[%s] Using %s solver %s", authorization.domain, challenge.type, type(solver).__name__
        )
        return challenge, solver

    def key_material(
        self,
        authorization: Authorization,
        challenge: Challenge,
        records: typing.Iterable[str] = (),
    ) -> str:
        """Computes the value that the solver has to present for the given challenge.

        This is the key authorization for all challenge types except *dns-persist-01*,
        whose solvers get the issue-value of the TXT record instead.

        :param records: The *dns-persist-01* TXT record values that already exist for the domain.
            An issuer domain name that one of them authorizes is preferred.
        """
        if challenge.challenge_type == ChallengeType.DNS_PERSIST_01:
            try:
                issuer_domain_name = dns01.select_issuer_domain_name(
                    challenge.issuer_domain_names,
                    self.issuer_domain_name,
                    records=records,
                    account_uri=self._client.account_uri,
                    wildcard=authorization.wildcard,
                    persist_until=self.persist_until,
                )
                return dns01.build_issue_value(
                    issuer_domain_name,
                    self._client.account_uri,
                    wildcard=authorization.wildcard,
                    persist_until=self.persist_until,
                )
            except ValueError as e:
                raise ProviderError(authorization.domain, challenge) from e

        return self._client.key_authorization(challenge.token)

    async def existing_records(
        self, authorization: Authorization, challenge: Challenge, solver: ChallengeSolver
    ) -> typing.Set[str]:
        """Looks up the *dns-persist-01* records that are already in place, using the solver's resolver."""
        if challenge.challenge_type != ChallengeType.DNS_PERSIST_01 or not isinstance(
            solver, dns01.DNS01ChallengeHelper
        ):
            return set()

        name = dns01.persist_challenge_fqdn(authorization.domain)
        try:
            return await solver.query_txt_record(name)
        except dns.exception.DNSException as e:
            logger.warning("[%s] Looking up %s failed: %s", authorization.domain, name, e)
            raise ProviderError(authorization.domain, challenge) from e

    def _lock_for(self, solver: ChallengeSolver):
        if solver.SEQUENTIAL:
            return self._locks.setdefault(id(solver), asyncio.Lock())
        return contextlib.nullcontext()

    async def drive(
        self,
        authorization: Authorization,
        challenge: Challenge,
        solver: ChallengeSolver,
    ) -> Authorization:
        """Completes the given challenge and waits for the server to validate the authorization.

        The solver's :meth:`~acmekit.client.challenge_solver.ChallengeSolver.cleanup` is always called,
        even if presenting or validation failed or the task was cancelled.

        :param authorization: The pending authorization that the challenge belongs to.
        :param challenge: The challenge to complete.
        :param solver: The solver to use.
        :raises: :class:`~acmekit.client.exceptions.CouldNotCompleteChallenge` If the challenge could not be completed.
        :return: The valid authorization.
        """
        domain = authorization.domain
        records = await self.existing_records(authorization, challenge, solver)
        key_authorization = self.key_material(authorization, challenge, records)

        async with self._lock_for(solver):
            try:
                logger.info("[%s] Presenting %s challenge", domain, challenge.type)
                try:
                    await solver.present(domain, challenge.token, key_authorization)
                except CouldNotCompleteChallenge:
                    raise
                except Exception as e:
                    logger.warning("[%s] Presenting the challenge failed: %s", domain, e)
                    raise ProviderError(domain, challenge) from e

                return await self._validate(authorization, challenge, solver)
            finally:
                await self._cleanup(solver, domain, challenge, key_authorization)

    async def _validate(
        self, authorization: Authorization, challenge: Challenge, solver: ChallengeSolver
    ) -> Authorization:
        domain = authorization.domain

        # Tell the server that we are ready for challenge validation
        challenge = await self._client.challenge_validate(challenge.url)
        if challenge.status == ChallengeStatus.INVALID:
            raise ChallengeInvalid(domain, challenge, challenge.error)

        timeout, interval = solver.timeout()
        try:
            authorization = await poll_until(
                self._client.authorization_get,
                authorization.url,
                done=lambda authz: authz.is_valid,
                failed=lambda authz: authz.is_failed,
                policy=RetryPolicy(interval=interval, timeout=timeout),
            )
        except PollingTimeout as e:
            logger.warning(
                "[%s] The server did not validate the challenge within %.0fs", domain, timeout
            )
            raise PropagationTimeout(domain, challenge, timeout) from e
        except PollingException as e:
            failed: Authorization = e.obj
            if invalid := failed.failed_challenge():
                raise ChallengeInvalid(domain, invalid, invalid.error) from e
            raise AuthorizationInvalid(domain, failed.status) from e

        logger.info("[%s] The server validated our request", domain)
        return authorization

    async def _cleanup(
        self, solver: ChallengeSolver, domain: str, challenge: Challenge, key_authorization: str
    ) -> None:
        try:
            await solver.cleanup(domain, challenge.token, key_authorization)
        except Exception as e:
            logger.warning("[%s] Cleaning up the %s challenge failed: %s", domain, challenge.type, e)
        else:
            logger.debug("[%s] Cleaned up the %s challenge", domain, challenge.type)
