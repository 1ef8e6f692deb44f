"""Helpers shared by the DNS based challenge solvers.

Covers the *dns-01* TXT record derivation, zone discovery, propagation checks and the
issue-values of the *dns-persist-01* challenge type.
"""
import asyncio
import datetime
import hashlib
import logging
import re
import typing
from dataclasses import dataclass

import dns.asyncresolver
import dns.exception
import dns.name
import dns.resolver
import josepy
from pydantic_settings import BaseSettings

from acmekit.client.exceptions import PropagationTimeout

logger = logging.getLogger(__name__)

DNS01_LABEL = "_acme-challenge"
DNS_PERSIST_LABEL = "_validation-persist"

POLICY_WILDCARD = "wildcard"

# RFC 8659 value characters, i.e. printable ASCII except space and ";"
_VALUE_RE = re.compile(r"^[\x21-\x3a\x3c-\x7e]*$")


def _base_domain(domain: str) -> str:
    return domain[2:] if domain.startswith("*.") else domain


@dataclass(frozen=True)
class ChallengeInfo:
    fqdn: str
    """The fully qualified name of the TXT record, including the trailing dot."""
    value: str
    """The TXT record's value."""


def challenge_info(domain: str, key_authorization: str) -> ChallengeInfo:
    """Derives the TXT record that answers a *dns-01* challenge.

    `8.4. DNS Challenge <https://tools.ietf.org/html/rfc8555#section-8.4>`_

    :param domain: The domain being validated. A wildcard label is stripped.
    :param key_authorization: The challenge's key authorization.
    :return: The record's name and value.
    """
    digest = hashlib.sha256(key_authorization.encode()).digest()
    return ChallengeInfo(
        fqdn=f"{DNS01_LABEL}.{_base_domain(domain)}.",
        value=josepy.b64.b64encode(digest).decode(),
    )


def persist_challenge_fqdn(domain: str) -> str:
    """The name of the TXT record that holds the *dns-persist-01* issue-value for the given domain."""
    return f"{DNS_PERSIST_LABEL}.{_base_domain(domain)}."


async def find_zone(fqdn: str, resolver: dns.asyncresolver.Resolver = None) -> dns.name.Name:
    """Finds the zone that the given name belongs to by walking up to the closest SOA record.

    :raises: :class:`dns.resolver.NoRootSOA` If no zone could be determined.
    """
    return await dns.asyncresolver.zone_for_name(fqdn, resolver=resolver)


class DNS01ChallengeHelper:
    """Mixin for challenge solvers that provision TXT records.

    Provides the polling of the DNS until a provisioned record is visible.
    """

    POLLING_DELAY = 2.0
    """Delay in seconds between two DNS queries for the provisioned record."""
    POLLING_TIMEOUT = 120.0
    """Default upper bound in seconds on the propagation of a record."""

    class Config(BaseSettings, extra="forbid"):
        dns_servers: typing.List[str] = []
        """Nameservers to check for record propagation. The system resolver is used if empty."""
        polling_timeout: float = 120.0
        """Upper bound in seconds on the propagation of a record."""
        propagation_check: bool = True
        """Whether to wait for the record to become visible before notifying the CA."""

    def __init__(self, *, cfg=None, helper: Config = None, **kwargs):
        super().__init__(cfg=cfg, **kwargs)

        helper = helper or self.Config()
        self.POLLING_TIMEOUT = helper.polling_timeout
        self._propagation_check = helper.propagation_check

        if helper.dns_servers:
            self._query_resolver = dns.asyncresolver.Resolver(configure=False)
            self._query_resolver.nameservers = list(helper.dns_servers)
        else:
            self._query_resolver = dns.asyncresolver.Resolver()

    async def query_txt_record(self, name: str) -> typing.Set[str]:
        """Queries the TXT records of the given name.

        :return: The set of record values, empty if the name does not exist.
        """
        try:
            resp = await self._query_resolver.resolve(name, "TXT")
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return set()

        return {b"".join(record.strings).decode() for record in resp}

    async def _query_until_completed(self, name: str, text: str) -> None:
        while True:
            try:
                if text in await self.query_txt_record(name):
                    return
            except dns.exception.DNSException as e:
                logger.debug("TXT query for %s failed: %s", name, e)

            logger.debug("Waiting for TXT record %s = %s to propagate", name, text)
            await asyncio.sleep(self.POLLING_DELAY)

    async def wait_for_propagation(self, domain: str, name: str, text: str) -> None:
        """Polls the DNS until the given record is visible.

        :raises: :class:`~acmekit.client.exceptions.PropagationTimeout` If the record did not
            become visible within :attr:`POLLING_TIMEOUT` seconds.
        """
        if not self._propagation_check:
            return

        try:
            await asyncio.wait_for(
                self._query_until_completed(name, text), self.POLLING_TIMEOUT
            )
        except asyncio.TimeoutError:
            raise PropagationTimeout(domain, timeout=self.POLLING_TIMEOUT)


@dataclass(frozen=True)
class IssueValue:
    """A parsed `RFC 8659 <https://tools.ietf.org/html/rfc8659>`_ issue-value as used by *dns-persist-01*."""

    issuer_domain_name: str
    account_uri: str = ""
    policy: str = ""
    persist_until: typing.Optional[datetime.datetime] = None

    @property
    def wildcard(self) -> bool:
        return self.policy.lower() == POLICY_WILDCARD

    def matches(self, other: "IssueValue") -> bool:
        """Whether this record authorizes what *other* requests."""
        return (
            self.issuer_domain_name == other.issuer_domain_name
            and self.account_uri == other.account_uri
            and (self.wildcard or not other.wildcard)
            and _epoch(self.persist_until) == _epoch(other.persist_until)
        )


def _epoch(when: typing.Optional[datetime.datetime]) -> typing.Optional[int]:
    # issue-values carry whole seconds
    return None if when is None else int(when.timestamp())


def has_matching_record(records: typing.Iterable[str], wanted: IssueValue) -> bool:
    """Whether any of the given TXT record values already authorizes *wanted*.

    Values that are not well-formed issue-values are skipped.
    """
    for record in records:
        try:
            parsed = parse_issue_value(record)
        except ValueError:
            continue
        if parsed.matches(wanted):
            return True

    return False


def validate_issuer_domain_name(name: str) -> None:
    if not name:
        raise ValueError("issuer-domain-name cannot be empty")
    if name != name.lower():
        raise ValueError(f"issuer-domain-name must be lowercase: {name!r}")
    if name.endswith("."):
        raise ValueError(f"issuer-domain-name must not have a trailing dot: {name!r}")


def build_issue_value(
    issuer_domain_name: str,
    account_uri: str,
    wildcard: bool = False,
    persist_until: datetime.datetime = None,
) -> str:
    """Builds the issue-value that a *dns-persist-01* TXT record has to contain.

    :param issuer_domain_name: One of the issuer domain names offered by the challenge.
    :param account_uri: The ACME account's URL.
    :param wildcard: Whether the record should also authorize wildcard certificates.
    :param persist_until: Optional point in time after which the record is no longer valid.
    :raises: :class:`ValueError` If the issuer domain name is malformed or the account URI is empty.
    :return: The issue-value, e.g. ``authority.example; accounturi=https://authority.example/acct/123``.
    """
    if not account_uri:
        raise ValueError("ACME account URI cannot be empty")

    validate_issuer_domain_name(issuer_domain_name)

    parts = [issuer_domain_name, f"accounturi={account_uri}"]
    if wildcard:
        parts.append(f"policy={POLICY_WILDCARD}")
    if persist_until is not None:
        parts.append(f"persistUntil={int(persist_until.timestamp())}")

    return "; ".join(parts)


def parse_issue_value(value: str) -> IssueValue:
    """Parses an issue-value.

    Tags are case-insensitive and unknown tags are ignored. A policy other than *wildcard* is treated as absent.

    :raises: :class:`ValueError` If the value is malformed.
    """
    issuer, *params = value.split(";")
    issuer = issuer.strip()
    if not issuer:
        raise ValueError("missing issuer-domain-name")

    seen = set()
    fields = {}
    for param in params:
        param = param.strip()
        if not param:
            raise ValueError("empty parameter or trailing semicolon provided")
        if "=" not in param:
            raise ValueError(f"malformed parameter {param!r} should be tag=value pair")

        tag, tag_value = (part.strip() for part in param.split("=", 1))
        if not tag:
            raise ValueError(f"malformed parameter {param!r}, empty tag")

        tag = tag.lower()
        if tag in seen:
            raise ValueError(f"duplicate parameter {tag!r}")
        seen.add(tag)

        if tag not in ("accounturi", "policy", "persistuntil"):
            continue

        if not _VALUE_RE.match(tag_value):
            raise ValueError(f"malformed value {tag_value!r} for tag {tag!r}")

        if tag == "accounturi":
            if not tag_value:
                raise ValueError('empty value provided for mandatory "accounturi"')
            fields["account_uri"] = tag_value
        elif tag == "policy":
            if tag_value.lower() == POLICY_WILDCARD:
                fields["policy"] = tag_value
        else:
            try:
                fields["persist_until"] = datetime.datetime.fromtimestamp(
                    int(tag_value), tz=datetime.timezone.utc
                )
            except ValueError as e:
                raise ValueError(f'malformed "persistuntil": {e}')

    return IssueValue(issuer_domain_name=issuer, **fields)


def select_issuer_domain_name(
    offered: typing.Iterable[str],
    preferred: str = None,
    records: typing.Iterable[str] = (),
    account_uri: str = "",
    wildcard: bool = False,
    persist_until: datetime.datetime = None,
) -> str:
    """Picks the issuer domain name to put into the issue-value.

    :param offered: The issuer domain names offered by the challenge.
    :param preferred: A user-supplied issuer domain name, which must be among the offered ones.
    :param records: The TXT record values that already exist for the domain.
    :param account_uri: The ACME account's URL, to match existing records against.
    :param wildcard: Whether the record has to authorize wildcard certificates.
    :param persist_until: The expiry that existing records have to carry.
    :raises: :class:`ValueError` If nothing usable is offered.
    :return: The preferred name, else the first offered name that an existing record matches,
        else the lexicographically first offered one.
    """
    candidates = sorted(offered or ())
    if not candidates:
        raise ValueError("issuer-domain-names missing from the challenge")

    for name in candidates:
        validate_issuer_domain_name(name)

    if preferred:
        if preferred not in candidates:
            raise ValueError(
                f"provided issuer-domain-name {preferred!r} not offered by the challenge"
            )
        return preferred

    records = list(records)
    for name in candidates:
        wanted = IssueValue(
            issuer_domain_name=name,
            account_uri=account_uri,
            policy=POLICY_WILDCARD if wildcard else "",
            persist_until=persist_until,
        )
        if has_matching_record(records, wanted):
            return name

    return candidates[0]
