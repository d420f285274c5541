"""
Resilient hostname resolution.

Strategies are tried in order, each bounded by its own timeout:

  recursive - plaintext DNS (UDP, TCP on truncation) against public resolvers
  doh       - DNS-over-HTTPS JSON API, providers shuffled per lookup
  dot       - DNS-over-TLS on port 853
  static    - a built-in table of known-good addresses

A strategy failure is logged and the chain moves on. When a strategy returns
several addresses one is picked uniformly at random. Results are never cached
across sessions.
"""

import asyncio
import ipaddress
import logging
import random
import threading
import time
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import dns.asyncquery
import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import requests

from ..core.exceptions import DNSResolutionFailure
from ..core.models import ResolutionResult
from .http_client import HTTPClientManager


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
        return True
    except ValueError:
        return False


def _valid_ipv4(candidates: Iterable[str]) -> List[str]:
    out = []
    for c in candidates:
        try:
            out.append(str(ipaddress.IPv4Address(str(c).strip())))
        except ValueError:
            continue
    return out


class ResolutionStrategy:
    """Base class for one way of turning a hostname into IPv4 addresses."""

    name = "base"

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self.logger = logging.getLogger(f"{__name__}.{self.name}")

    async def lookup(self, hostname: str) -> List[str]:
        """Return candidate addresses. Raise (any exception) or return [] on failure."""
        raise NotImplementedError


class _WireQuerier(ResolutionStrategy):
    """Shared query building and response parsing for wire-format DNS."""

    @staticmethod
    def _make_query(hostname: str) -> dns.message.Message:
        return dns.message.make_query(dns.name.from_text(hostname), dns.rdatatype.A)

    def _parse_response(self, response: dns.message.Message) -> List[str]:
        """Follow the CNAME chain from the question name and collect A records."""
        if response.rcode() == dns.rcode.NXDOMAIN:
            return []
        if response.rcode() != dns.rcode.NOERROR:
            raise dns.exception.DNSException(
                f"DNS response has RCODE {dns.rcode.to_text(response.rcode())}"
            )
        current = response.question[0].name
        seen = set()
        while current not in seen:
            seen.add(current)
            try:
                rrset = response.find_rrset(
                    response.answer, current, dns.rdataclass.IN, dns.rdatatype.A
                )
                return [rr.address for rr in rrset]
            except KeyError:
                pass
            try:
                rrset = response.find_rrset(
                    response.answer, current, dns.rdataclass.IN, dns.rdatatype.CNAME
                )
            except KeyError:
                return []
            current = rrset[0].target
        self.logger.info("CNAME loop in response")
        return []


class RecursiveDNSStrategy(_WireQuerier):
    """Plaintext DNS against a fixed list of public resolvers."""

    name = "recursive"

    def __init__(self, servers: Sequence[str], timeout: float = 5.0):
        super().__init__(timeout)
        self.servers = list(servers)

    async def lookup(self, hostname: str) -> List[str]:
        per_server = max(0.5, self.timeout / 3)
        last_error: Optional[BaseException] = None
        for server in self.servers:
            query = self._make_query(hostname)
            try:
                response = await dns.asyncquery.udp(query, server, timeout=per_server)
                if response.flags & dns.flags.TC:
                    response = await dns.asyncquery.tcp(query, server, timeout=per_server)
                addresses = self._parse_response(response)
            except (dns.exception.DNSException, OSError, EOFError) as e:
                self.logger.debug(f"{server} failed for {hostname}: {e!r}")
                last_error = e
                continue
            if addresses:
                return addresses
        if last_error is not None:
            raise last_error
        return []


class DoHStrategy(ResolutionStrategy):
    """DNS-over-HTTPS JSON API (`?name=<host>&type=A`).

    The strategy timeout is split evenly across providers. Each provider gets
    up to `retries` attempts inside its share, so a blackholed provider cannot
    starve the ones after it. Attempts run one at a time in worker threads and
    no new attempt starts once the share is spent.
    """

    name = "doh"
    min_attempt_timeout = 0.05

    def __init__(
        self,
        providers: Sequence[str],
        client: HTTPClientManager,
        retries: int = 3,
        timeout: float = 5.0,
        rng: Optional[random.Random] = None,
    ):
        super().__init__(timeout)
        self.providers = list(providers)
        self.client = client
        self.retries = max(1, retries)
        self._rng = rng or random.Random()

    def _query(self, provider: str, hostname: str, timeout: float) -> List[str]:
        data = self.client.get_json(
            provider,
            params={"name": hostname, "type": "A"},
            headers={"Accept": "application/dns-json"},
            timeout=timeout,
        )
        answers = (data.get("Answer") or []) if isinstance(data, dict) else []
        return _valid_ipv4(a.get("data", "") for a in answers if a.get("type") == 1)

    async def lookup(self, hostname: str) -> List[str]:
        providers = list(self.providers)
        self._rng.shuffle(providers)
        loop = asyncio.get_running_loop()
        share = self.timeout / max(1, len(providers))
        last_error: Optional[BaseException] = None
        for provider in providers:
            deadline = loop.time() + share
            for attempt in range(1, self.retries + 1):
                remaining = deadline - loop.time()
                if remaining < self.min_attempt_timeout:
                    break
                try:
                    addresses = await asyncio.wait_for(
                        asyncio.to_thread(self._query, provider, hostname, remaining), remaining
                    )
                except asyncio.TimeoutError as e:
                    self.logger.debug(f"{provider} attempt {attempt} timed out for {hostname}")
                    last_error = e
                    continue
                except (requests.RequestException, ValueError) as e:
                    self.logger.debug(f"{provider} attempt {attempt} failed for {hostname}: {e!r}")
                    last_error = e
                    continue
                if addresses:
                    return addresses
                break
        if last_error is not None:
            raise last_error
        return []


class DoTStrategy(_WireQuerier):
    """DNS-over-TLS against public resolvers on port 853."""

    name = "dot"

    def __init__(self, providers: Sequence[Mapping], timeout: float = 5.0):
        super().__init__(timeout)
        self.providers = [dict(p) for p in providers]

    async def lookup(self, hostname: str) -> List[str]:
        per_server = max(0.5, self.timeout / max(1, len(self.providers)))
        last_error: Optional[BaseException] = None
        for provider in self.providers:
            query = self._make_query(hostname)
            try:
                response = await dns.asyncquery.tls(
                    query,
                    provider["host"],
                    timeout=per_server,
                    port=int(provider.get("port", 853)),
                    server_hostname=provider.get("server_name"),
                )
                addresses = self._parse_response(response)
            except (dns.exception.DNSException, OSError, EOFError) as e:
                self.logger.debug(f"{provider['host']} failed for {hostname}: {e!r}")
                last_error = e
                continue
            if addresses:
                return addresses
        if last_error is not None:
            raise last_error
        return []


class StaticTableStrategy(ResolutionStrategy):
    """Built-in hostname table; also tries the name with and without `www.`."""

    name = "static"

    def __init__(self, table: Mapping[str, Sequence[str]], timeout: float = 5.0):
        super().__init__(timeout)
        self.table = {k.lower(): list(v) for k, v in table.items()}

    async def lookup(self, hostname: str) -> List[str]:
        host = hostname.lower().rstrip(".")
        keys = [host]
        if host.startswith("www."):
            keys.append(host[4:])
        else:
            keys.append(f"www.{host}")
        for key in keys:
            if key in self.table:
                return list(self.table[key])
        return []


class ResolverChain:
    """Ordered fallback over resolution strategies."""

    def __init__(
        self,
        strategies: Sequence[ResolutionStrategy],
        rng: Optional[random.Random] = None,
        timeout: float = 5.0,
    ):
        self.logger = logging.getLogger(__name__)
        self.strategies = list(strategies)
        self.timeout = timeout
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._successes: Dict[str, int] = {}
        self._failures: Dict[str, int] = {}

    @property
    def servers(self) -> List[str]:
        """Plaintext resolvers in use (for the health document)."""
        for strategy in self.strategies:
            if isinstance(strategy, RecursiveDNSStrategy):
                return list(strategy.servers)
        return []

    def _count(self, table: Dict[str, int], name: str):
        with self._lock:
            table[name] = table.get(name, 0) + 1

    async def resolve(self, hostname: str) -> ResolutionResult:
        """Resolve to one IPv4 address or raise DNSResolutionFailure."""
        started = time.monotonic()
        host = hostname.strip().strip("[]").rstrip(".")
        if not host:
            raise DNSResolutionFailure("empty hostname")

        if is_ip_literal(host):
            return ResolutionResult(host, host, "literal", 0.0)
        if host.lower() == "localhost":
            return ResolutionResult(host, "127.0.0.1", "literal", 0.0)

        errors: Dict[str, str] = {}
        for strategy in self.strategies:
            timeout = strategy.timeout or self.timeout
            try:
                candidates = await asyncio.wait_for(strategy.lookup(host), timeout)
            except asyncio.TimeoutError:
                errors[strategy.name] = f"timed out after {timeout}s"
                self.logger.warning(f"DNS strategy {strategy.name} timed out for {host}")
                self._count(self._failures, strategy.name)
                continue
            except Exception as e:
                errors[strategy.name] = repr(e)
                self.logger.warning(f"DNS strategy {strategy.name} failed for {host}: {e!r}")
                self._count(self._failures, strategy.name)
                continue

            addresses = _valid_ipv4(candidates)
            if not addresses:
                errors[strategy.name] = "no addresses"
                self.logger.debug(f"DNS strategy {strategy.name} returned nothing for {host}")
                self._count(self._failures, strategy.name)
                continue

            ip = self._rng.choice(addresses)
            latency_ms = (time.monotonic() - started) * 1000
            self._count(self._successes, strategy.name)
            self.logger.debug(f"Resolved {host} -> {ip} via {strategy.name} ({latency_ms:.0f}ms)")
            return ResolutionResult(host, ip, strategy.name, latency_ms)

        self.logger.error(f"All DNS strategies failed for {host}: {errors}")
        raise DNSResolutionFailure(
            f"could not resolve {host}",
            details={"hostname": host, "errors": errors},
        )

    def get_metrics(self) -> Dict[str, object]:
        with self._lock:
            return {
                "strategies": [s.name for s in self.strategies],
                "successes": dict(self._successes),
                "failures": dict(self._failures),
            }


def build_resolver_chain(
    order: Sequence[str],
    dns_servers: Sequence[str],
    doh_providers: Sequence[str],
    dot_providers: Sequence[Mapping],
    static_hosts: Mapping[str, Sequence[str]],
    timeout: float = 5.0,
    doh_retries: int = 3,
    rng: Optional[random.Random] = None,
    http_client: Optional[HTTPClientManager] = None,
) -> ResolverChain:
    """Assemble the chain in the configured order, skipping strategies with nothing to query."""
    rng = rng or random.Random()
    factories = {
        "recursive": lambda: RecursiveDNSStrategy(dns_servers, timeout) if dns_servers else None,
        "doh": lambda: DoHStrategy(
            doh_providers, http_client or HTTPClientManager(rng), doh_retries, timeout, rng
        ) if doh_providers else None,
        "dot": lambda: DoTStrategy(dot_providers, timeout) if dot_providers else None,
        "static": lambda: StaticTableStrategy(static_hosts, timeout),
    }
    strategies = []
    for name in order:
        factory = factories.get(name)
        if factory is None:
            raise ValueError(f"unknown DNS strategy: {name}")
        strategy = factory()
        if strategy is not None:
            strategies.append(strategy)
    return ResolverChain(strategies, rng=rng, timeout=timeout)
