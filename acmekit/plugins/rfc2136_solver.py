import logging
import typing

import dns.asyncquery
import dns.asyncresolver
import dns.name
import dns.rcode
import dns.tsigkeyring
import dns.update

from acmekit.client.challenge_solver import ChallengeSolver
from acmekit.dns01 import (
    DNS01ChallengeHelper,
    challenge_info,
    find_zone,
    has_matching_record,
    parse_issue_value,
    persist_challenge_fqdn,
)
from acmekit.models import ChallengeType
from acmekit.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)

"""
This module contains DNS challenge solvers using RFC2136 TSIG updates

They look up the zone name using the TSIG credentials on the resolver
"""


class RFC2136Error(Exception):
    pass


@PluginRegistry.register_plugin("rfc2136")
class RFC2136Client(DNS01ChallengeHelper, ChallengeSolver):
    """
    Solves DNS-01 challenges using RFC 2136 dynamic updates.

    The TXT record is added to the zone that contains the challenge name, which is
    looked up on the update server itself.
    """

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_01])

    class Config(DNS01ChallengeHelper.Config, ChallengeSolver.Config):
        type: typing.Literal["rfc2136"] = "rfc2136"
        """The type of challenge solver"""
        server: str
        """DNS server to use for TSIG updates"""
        port: int = 53
        """Port of the DNS server"""
        keyid: str
        """TSIG key ID to use for TSIG updates"""
        alg: str
        """TSIG algorithm to use for TSIG updates"""
        secret: str
        """TSIG secret to use for TSIG updates"""
        ttl: int = 60
        """TTL of the TXT records"""

    def __init__(self, cfg: Config):
        super().__init__(cfg=cfg, helper=cfg)

        self._port = cfg.port
        self._ttl = cfg.ttl
        self.keyring = dns.tsigkeyring.from_text({cfg.keyid: (cfg.alg, cfg.secret)})
        self.resolver = dns.asyncresolver.Resolver(configure=False)
        self.resolver.nameservers = [cfg.server]
        self.resolver.port = cfg.port
        self.resolver.use_tsig(self.keyring, keyname=cfg.keyid, algorithm=cfg.alg)

    def timeout(self) -> typing.Tuple[float, float]:
        return max(self.TIMEOUT, self.POLLING_TIMEOUT), self.POLLING_INTERVAL

    async def _run_query(self, msg: dns.update.Update) -> None:
        resp = await dns.asyncquery.tcp(msg, self.resolver.nameservers[0], port=self._port)
        if (rcode := resp.rcode()) != dns.rcode.NOERROR:
            raise RFC2136Error(f"DNS update failed: {dns.rcode.to_text(rcode)}")

    async def _update(self, name: str) -> typing.Tuple[dns.name.Name, dns.update.Update]:
        zone = await find_zone(name, resolver=self.resolver)
        relative = dns.name.from_text(name).relativize(zone)

        update = dns.update.Update(zone, keyring=self.keyring)
        return relative, update

    async def set_txt_record(self, name: str, text: str, ttl: int = None) -> None:
        ttl = ttl or self._ttl
        logger.debug("Setting TXT record %s = %s, TTL %d", name, text, ttl)

        name, update = await self._update(name)
        update.add(name, ttl, "TXT", f'"{text}"')

        await self._run_query(update)

    async def delete_txt_record(self, name: str, text: str) -> None:
        logger.debug("Deleting TXT record %s = %s", name, text)

        name, update = await self._update(name)
        update.delete(name, "TXT", f'"{text}"')

        await self._run_query(update)

    async def present(self, domain: str, token: str, key_authorization: str) -> None:
        info = challenge_info(domain, key_authorization)
        await self.set_txt_record(info.fqdn, info.value)
        # Poll the DNS until the correct record is available
        await self.wait_for_propagation(domain, info.fqdn, info.value)

    async def cleanup(self, domain: str, token: str, key_authorization: str) -> None:
        info = challenge_info(domain, key_authorization)
        await self.delete_txt_record(info.fqdn, info.value)


@PluginRegistry.register_plugin("rfc2136_persist")
class RFC2136PersistClient(RFC2136Client):
    """Solves dns-persist-01 challenges using RFC 2136 dynamic updates.

    The issue-value record is meant to outlive the order, so cleanup leaves it in place.
    Records that already authorize the account are not written again.
    """

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_PERSIST_01])

    class Config(RFC2136Client.Config):
        type: typing.Literal["rfc2136_persist"] = "rfc2136_persist"

    async def present(self, domain: str, token: str, key_authorization: str) -> None:
        name = persist_challenge_fqdn(domain)
        wanted = parse_issue_value(key_authorization)
        if has_matching_record(await self.query_txt_record(name), wanted):
            logger.info("[%s] Issue-value record %s is already in place", domain, name)
            return

        await self.set_txt_record(name, key_authorization, ttl=self._ttl)
        await self.wait_for_propagation(domain, name, key_authorization)

    async def cleanup(self, domain: str, token: str, key_authorization: str) -> None:
        logger.debug("[%s] Keeping persistent record %s", domain, persist_challenge_fqdn(domain))
