"""Registry lookup clients.

Every client exposes ``async resolve(label) -> LookupResult`` and reports
failures as :class:`TransientLookupError` (worth retrying) or
:class:`PermanentLookupError` (not worth retrying).
"""

import asyncio
import contextlib
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Protocol

import aiodns
import aiohttp

from .models import (
    ConfigurationError,
    LookupResult,
    PermanentLookupError,
    TransientLookupError,
)

logger = logging.getLogger(__name__)

# Reply codes of the SWITCH domain check service.
REPLY_AVAILABLE = 1
REPLY_TAKEN = 0
REPLY_RATE_LIMITED = -95

DNS_TRANSIENT = {
    aiodns.error.ARES_ETIMEOUT,
    aiodns.error.ARES_ESERVFAIL,
    aiodns.error.ARES_ECONNREFUSED,
    aiodns.error.ARES_EREFUSED,
}


class Resolver(Protocol):
    async def resolve(self, label: str) -> LookupResult: ...


def _describe(e: BaseException) -> str:
    return str(e) or type(e).__name__


def parse_reply(text: str) -> LookupResult:
    """Classify a ``<code>:<message>`` reply of the domain check service."""
    text = text.strip()
    if not text:
        raise TransientLookupError("empty reply")
    code_s, _, message = text.partition(":")
    try:
        code = int(code_s.strip())
    except ValueError:
        raise TransientLookupError(f"unparseable reply {text[:80]!r}") from None
    message = message.strip()
    if code == REPLY_AVAILABLE:
        return LookupResult(True, code, message)
    if code == REPLY_TAKEN:
        return LookupResult(False, code, message)
    if code == REPLY_RATE_LIMITED:
        raise TransientLookupError(f"rate limited ({code}): {message}")
    raise PermanentLookupError(f"reply {code}: {message}")


class DomainCheckClient:
    """Plain TCP availability check, one connection per query."""

    def __init__(
        self,
        host: str = "whois.nic.ch",
        port: int = 4343,
        tld: str = "li",
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.tld = tld
        self.timeout = timeout

    async def resolve(self, label: str) -> LookupResult:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), self.timeout
            )
        except (asyncio.TimeoutError, OSError) as e:
            raise TransientLookupError(
                f"connect to {self.host}:{self.port} failed: {_describe(e)}"
            ) from e
        try:
            writer.write(f"{label}.{self.tld}\n".encode("ascii"))
            await writer.drain()
            data = await asyncio.wait_for(reader.read(), self.timeout)
        except (asyncio.TimeoutError, OSError) as e:
            raise TransientLookupError(f"query failed: {_describe(e)}") from e
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
        return parse_reply(data.decode("utf-8", errors="replace"))


class RdapClient:
    """RDAP lookup: 404 means the domain is not registered."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str = "https://rdap.nic.ch",
        tld: str = "li",
        timeout: float = 10.0,
    ) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.tld = tld
        self.timeout = timeout

    async def resolve(self, label: str) -> LookupResult:
        url = f"{self.base_url}/domain/{label}.{self.tld}"
        try:
            async with self.session.get(
                url,
                headers={"Accept": "application/rdap+json"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientLookupError(f"RDAP request failed: {_describe(e)}") from e

        if status == 404:
            return LookupResult(True, status, "not found")
        if status == 200:
            return LookupResult(False, status, "registered")
        if status == 429 or status >= 500:
            raise TransientLookupError(f"RDAP HTTP {status}")
        raise PermanentLookupError(f"RDAP HTTP {status}")


class DnsClient:
    """Delegation check via NS records.

    Only a heuristic: a registered domain without name servers looks
    available.
    """

    def __init__(
        self,
        resolver: aiodns.DNSResolver | None = None,
        tld: str = "li",
        timeout: float = 10.0,
    ) -> None:
        self.resolver = resolver
        self.tld = tld
        self.timeout = timeout

    async def resolve(self, label: str) -> LookupResult:
        if self.resolver is None:
            self.resolver = aiodns.DNSResolver(timeout=self.timeout)
        domain = f"{label}.{self.tld}"
        try:
            await self.resolver.query_dns(domain, "NS")
        except aiodns.error.DNSError as e:
            code = e.args[0] if e.args else None
            if code == aiodns.error.ARES_ENOTFOUND:
                return LookupResult(True, code, "NXDOMAIN")
            if code == aiodns.error.ARES_ENODATA:
                return LookupResult(False, code, "no NS records")
            if code in DNS_TRANSIENT:
                raise TransientLookupError(f"DNS error for {domain}: {e}") from e
            raise PermanentLookupError(f"DNS error for {domain}: {e}") from e
        return LookupResult(False, 0, "delegated")


class BlockingResolver:
    """Run a synchronous ``func(label) -> LookupResult`` in worker threads.

    The resolver owns a thread pool sized for the scan's worker count, so
    blocking lookups neither queue behind the loop's default executor nor
    keep ``asyncio.run`` waiting after a stop. Call :meth:`close` when done.
    """

    def __init__(self, func: Callable[[str], LookupResult], max_workers: int = 50) -> None:
        self.func = func
        self.max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None

    async def resolve(self, label: str) -> LookupResult:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="lookup"
            )
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.func, label)

    def close(self) -> None:
        """Drop queued lookups and stop waiting for running ones."""
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None


def make_resolver(config, session: aiohttp.ClientSession | None = None) -> Resolver:
    """Build the lookup client selected by ``config.backend``."""
    if config.backend == "whois":
        return DomainCheckClient(
            host=config.whois_host,
            port=config.whois_port,
            tld=config.tld,
            timeout=config.lookup_timeout,
        )
    if config.backend == "rdap":
        if session is None:
            raise ConfigurationError("the rdap backend needs an aiohttp session")
        return RdapClient(
            session, base_url=config.rdap_url, tld=config.tld, timeout=config.lookup_timeout
        )
    if config.backend == "dns":
        return DnsClient(tld=config.tld, timeout=config.lookup_timeout)
    raise ConfigurationError(f"unknown backend {config.backend!r}")
