"""
Shared fixtures. Everything runs against MemoryDatabase and a scripted
transport, so no network or MongoDB is needed.
"""

import asyncio
import json
import sys
from pathlib import Path

import pytest

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from errors import TransportError
from memory_database import MemoryDatabase
from pipeline import build_pipeline
from transport import FetchResponse, Transport

BASE_URL = "https://listings.test"


class FakeTransport(Transport):
    """
    Scripted transport.

    routes maps a URL to a list of outcomes consumed in order; the last one
    repeats. An outcome is a dict/list (JSON body), a str, an exception to
    raise, or a callable taking the request kwargs and returning one of those.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.fail_proxies = set()
        self.gate = None

    def add(self, url, *outcomes):
        self.routes.setdefault(url, []).extend(outcomes)

    async def request(self, method, url, proxy=None, timeout=None, headers=None, **kwargs):
        self.calls.append({"method": method, "url": url, "proxy": proxy, "headers": headers, **kwargs})
        if self.gate is not None:
            await self.gate.wait()
        if proxy in self.fail_proxies:
            raise TransportError(TransportError.REFUSED, "proxy refused connection")

        queue = self.routes.get(url)
        if not queue:
            raise TransportError(TransportError.BAD_STATUS, url, status_code=404)
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]

        if callable(outcome) and not isinstance(outcome, Exception):
            outcome = outcome(method=method, **kwargs)
        if isinstance(outcome, Exception):
            raise outcome
        text = outcome if isinstance(outcome, str) else json.dumps(outcome)
        return FetchResponse(status_code=200, text=text, url=url)


def search_url():
    return f"{BASE_URL}/property/api/search"


def detail_url(external_id):
    return f"{BASE_URL}/property/{external_id}"


def listing_doc(external_id, price=1850, **extra):
    doc = {
        "id": external_id,
        "address": f"{external_id} Rue Sainte-Catherine",
        "city": "Montreal",
        "price": price,
        "images": [f"https://img.test/{external_id}/1.jpg", f"https://img.test/{external_id}/2.jpg"],
    }
    doc.update(extra)
    return doc


@pytest.fixture
def db():
    return MemoryDatabase()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def pipeline(db, transport):
    return build_pipeline(
        db,
        transport,
        source_base_url=BASE_URL,
        request_interval_ms=0,
        retry_base_delay_ms=0,
        price_update_delay_ms=0,
        warmup_delay_seconds=3600,
        proxy_list="",
    )


async def wait_until_idle(runner, timeout=2.0):
    """Wait for background jobs launched by the runner to finish"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while runner.is_busy and loop.time() < deadline:
        await asyncio.sleep(0.01)
