# src/mcsocks/resolver.py
"""
Target resolution for mcsocks.

Resolves the Minecraft server domain to a concrete host:port on every call:
SRV lookup of ``_minecraft._tcp.<domain>`` first, A-record lookup of the
bare domain second. Results are never cached.
"""

import logging
from typing import Any, Optional

import dns.asyncresolver
import dns.exception
import dns.name
import dns.resolver

from .network import MINECRAFT_PORT, SRV_SERVICE, TargetAddress
from .robustness import NoRecordFound, ResolutionFailed

logger = logging.getLogger(__name__)

# An empty answer is a fallback signal, not a resolver failure.
_EMPTY_ANSWER = (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer)


def srv_query_name(domain: str) -> str:
    return f"{SRV_SERVICE}.{domain}"


def strip_root_label(host: str) -> str:
    """Drop a single trailing '.' (absolute DNS name) if present."""
    if host.endswith("."):
        return host[:-1]
    return host


class TargetResolver:
    """SRV-then-A resolver returning the first record the DNS server lists.

    ``dns_resolver`` is anything with an awaitable ``resolve(qname, rdtype)``
    in the shape of ``dns.asyncresolver.Resolver``. When omitted, a fresh
    resolver is built from the system configuration (or ``nameservers``)
    for each lookup.
    """

    def __init__(
        self,
        dns_resolver: Optional[Any] = None,
        port: int = MINECRAFT_PORT,
        nameservers: Optional[list[str]] = None,
        timeout: float = 5.0,
    ):
        self.dns_resolver = dns_resolver
        self.port = port
        self.nameservers = list(nameservers or [])
        self.timeout = timeout

    def _make_dns_resolver(self):
        if self.dns_resolver is not None:
            return self.dns_resolver
        if self.nameservers:
            r = dns.asyncresolver.Resolver(configure=False)
            r.nameservers = self.nameservers
        else:
            r = dns.asyncresolver.Resolver()
        r.lifetime = self.timeout
        r.cache = None
        return r

    async def _query(self, resolver, qname: str, rdtype: str) -> list:
        try:
            answer = await resolver.resolve(qname, rdtype)
        except _EMPTY_ANSWER:
            logger.debug(f"No {rdtype} records for {qname}")
            return []
        return list(answer)

    async def resolve(self, domain: str) -> TargetAddress:
        """Resolve ``domain`` to a TargetAddress.

        Raises NoRecordFound when neither lookup yields a record and
        ResolutionFailed for any resolver-level failure.
        """
        try:
            resolver = self._make_dns_resolver()

            srv_records = await self._query(resolver, srv_query_name(domain), "SRV")
            if srv_records:
                first = srv_records[0]
                if first.target == dns.name.root:
                    # RFC 2782: target "." means the service is not offered here
                    logger.debug(f"SRV record for {domain} points at the root, trying A record")
                else:
                    host = strip_root_label(first.target.to_text())
                    logger.debug(f"SRV {srv_query_name(domain)} -> {host}")
                    return TargetAddress(host, self.port)

            a_records = await self._query(resolver, domain, "A")
            if a_records:
                host = a_records[0].address
                logger.debug(f"A {domain} -> {host}")
                return TargetAddress(host, self.port)
        except dns.exception.DNSException as e:
            raise ResolutionFailed(domain, e) from e

        raise NoRecordFound(domain)
