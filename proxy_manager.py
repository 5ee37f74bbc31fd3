import random
import logging
from typing import List, Dict, Optional, Any, Tuple
from datetime import datetime
from config import settings
from errors import PersistenceError, TransportError
from gateway import PersistenceGateway
from models import ProxyProtocol, ProxyRecord

logger = logging.getLogger(__name__)

# Free development proxies, seeded only when the pool is empty
DEFAULT_PROXIES: List[Tuple[str, int]] = [
    ("8.8.8.8", 8080),
    ("1.1.1.1", 8080),
]


def parse_proxy_list(value: str) -> List[Dict[str, Any]]:
    """Parse 'host:port[:username:password]' entries separated by commas"""
    entries = []
    for raw in (value or "").split(","):
        raw = raw.strip()
        if not raw:
            continue
        parts = raw.split(":")
        if len(parts) not in (2, 4):
            logger.warning(f"Ignoring malformed proxy entry: {raw}")
            continue
        try:
            port = int(parts[1])
        except ValueError:
            logger.warning(f"Ignoring proxy entry with invalid port: {raw}")
            continue
        entry = {"address": parts[0], "port": port}
        if len(parts) == 4:
            entry["username"] = parts[2]
            entry["password"] = parts[3]
        entries.append(entry)
    return entries


class ProxyPool:
    """
    Round-robin rotation over the active proxies.

    Scores are kept in the persistence gateway, which applies every update
    atomically. The in-memory list only mirrors which proxies are active so
    get_next() never hands out a deactivated proxy.
    """

    def __init__(
        self,
        db: PersistenceGateway,
        transport=None,
        threshold: Optional[float] = None,
        test_url: Optional[str] = None,
        test_timeout: Optional[float] = None,
        proxy_list: Optional[str] = None,
        country: Optional[str] = None,
    ):
        self.db = db
        self.transport = transport
        self.threshold = settings.PROXY_DEACTIVATION_THRESHOLD if threshold is None else threshold
        self.test_url = test_url or settings.PROXY_TEST_URL
        self.test_timeout = test_timeout or settings.PROXY_TEST_TIMEOUT_SECONDS
        self.proxy_list = settings.PROXY_LIST if proxy_list is None else proxy_list
        self.country = country or settings.PROXY_COUNTRY

        self.proxies: List[ProxyRecord] = []
        self.current_proxy_index = 0

        self.user_agents = [
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
            "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        ]
        # Header templates must match the User-Agent family
        self.chrome_headers = [
            {
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
                "Accept-Language": "fr-CA,fr;q=0.9,en-CA;q=0.8,en;q=0.7",
                "Accept-Encoding": "gzip, deflate, br",
                "Sec-Fetch-Dest": "document",
                "Sec-Fetch-Mode": "navigate",
                "Sec-Fetch-Site": "none",
                "Upgrade-Insecure-Requests": "1",
                "Connection": "keep-alive",
            },
            {
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-CA,en;q=0.9",
                "Accept-Encoding": "gzip, deflate, br",
                "DNT": "1",
                "Connection": "keep-alive",
            },
        ]
        self.firefox_headers = [
            {
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-CA,en;q=0.5",
                "Accept-Encoding": "gzip, deflate, br",
                "DNT": "1",
                "Connection": "keep-alive",
            }
        ]
        self.safari_headers = [
            {
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-CA,en;q=0.9",
                "Accept-Encoding": "gzip, deflate, br",
                "Connection": "keep-alive",
            }
        ]

    async def initialize(self) -> int:
        """Load active proxies, seeding the default set when the store has none"""
        await self.reload()
        if not self.proxies:
            logger.info("No active proxies found, seeding default proxy set")
            await self._seed_defaults()
            await self.reload()
        logger.info(f"Proxy pool initialized with {len(self.proxies)} active proxies")
        return len(self.proxies)

    async def _seed_defaults(self):
        entries = [{"address": address, "port": port} for address, port in DEFAULT_PROXIES]
        entries.extend(parse_proxy_list(self.proxy_list))
        for entry in entries:
            try:
                await self.db.add_proxy(ProxyRecord(country=self.country, **entry))
            except PersistenceError as e:
                logger.error(f"Failed to seed proxy {entry['address']}:{entry['port']}: {e}")

    async def reload(self):
        """Replace the rotation with the active proxies, least recently used first"""
        self.proxies = await self.db.query_proxies(active=True, order_by="last_used")
        # Rotation restarts at the least recently used proxy
        self.current_proxy_index = 0

    async def get_next(self) -> Optional[ProxyRecord]:
        """Get the next active proxy using round-robin; None means go direct"""
        if not self.proxies:
            return None

        proxy = self.proxies[self.current_proxy_index % len(self.proxies)]
        self.current_proxy_index = (self.current_proxy_index + 1) % len(self.proxies)
        now = datetime.utcnow()
        proxy.last_used = now

        try:
            await self.db.touch_proxy(proxy.id, now)
        except PersistenceError as e:
            logger.warning(f"Could not stamp last_used on proxy {proxy.label}: {e}")
        return proxy

    async def record_outcome(
        self, proxy_id: str, success: bool, response_time_ms: Optional[float] = None
    ) -> Optional[ProxyRecord]:
        """Record a live request outcome. Stats are best effort; storage errors are logged."""
        try:
            updated = await self.db.update_proxy_stats(
                proxy_id, success, response_time_ms=response_time_ms, threshold=self.threshold
            )
        except PersistenceError as e:
            logger.error(f"Error updating proxy stats: {e}")
            return None
        self._apply(updated)
        return updated

    async def record_health_check(
        self, proxy_id: str, healthy: bool, response_time_ms: Optional[float] = None
    ) -> Optional[ProxyRecord]:
        updated = await self.db.update_proxy_stats(
            proxy_id, healthy, response_time_ms=response_time_ms, health_check=True, threshold=self.threshold
        )
        self._apply(updated)
        return updated

    def _apply(self, updated: Optional[ProxyRecord]):
        """Mirror an updated record into the rotation"""
        if updated is None:
            return

        position = next((i for i, p in enumerate(self.proxies) if p.id == updated.id), None)
        if updated.active:
            if position is None:
                self.proxies.append(updated)
                logger.info(f"Proxy {updated.label} re-activated (success rate {updated.success_rate:.1f})")
            else:
                self.proxies[position] = updated
        elif position is not None:
            del self.proxies[position]
            if position < self.current_proxy_index:
                self.current_proxy_index -= 1
            if self.proxies:
                self.current_proxy_index %= len(self.proxies)
            else:
                self.current_proxy_index = 0
            logger.warning(f"Proxy {updated.label} deactivated (success rate {updated.success_rate:.1f})")

    async def test_health(self, proxy: ProxyRecord) -> bool:
        """One request to the test URL through the proxy"""
        if self.transport is None:
            raise RuntimeError("ProxyPool has no transport configured for health checks")
        try:
            await self.transport.request(
                "GET",
                self.test_url,
                proxy=proxy.url,
                timeout=self.test_timeout,
                headers=self.get_random_headers(),
            )
            return True
        except TransportError as e:
            logger.debug(f"Health check failed for {proxy.label}: {e}")
            return False

    async def add_proxy(
        self,
        address: str,
        port: int,
        protocol: ProxyProtocol = ProxyProtocol.HTTP,
        username: Optional[str] = None,
        password: Optional[str] = None,
        country: Optional[str] = None,
    ) -> ProxyRecord:
        """Add or re-activate a proxy and put it in rotation"""
        stored = await self.db.add_proxy(ProxyRecord(
            address=address,
            port=port,
            protocol=protocol,
            username=username,
            password=password,
            country=country or self.country,
        ))
        self._apply(stored)
        return stored

    async def get_stats(self) -> Dict[str, Any]:
        """Get proxy statistics"""
        proxies = await self.db.query_proxies(order_by="success_rate")
        active = [p for p in proxies if p.active]
        return {
            "total_proxies": len(proxies),
            "active_proxies": len(active),
            "in_rotation": len(self.proxies),
            "avg_success_rate": round(sum(p.success_rate for p in proxies) / len(proxies), 2) if proxies else None,
        }

    def get_random_user_agent(self) -> str:
        return random.choice(self.user_agents)

    def get_random_headers(self) -> Dict[str, str]:
        """Get random headers that match the User-Agent"""
        user_agent = self.get_random_user_agent()

        if "Firefox" in user_agent:
            headers = random.choice(self.firefox_headers).copy()
        elif "Safari" in user_agent and "Chrome" not in user_agent:
            headers = random.choice(self.safari_headers).copy()
        else:
            headers = random.choice(self.chrome_headers).copy()

        headers["User-Agent"] = user_agent
        return headers
