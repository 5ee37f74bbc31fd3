import logging
from typing import Any, Dict, List, Optional

from config import settings
from errors import ExtractionFailure, TransportError
from extractor import Extractor
from fetcher import Fetcher
from models import ListingRecord, ListingType

logger = logging.getLogger(__name__)

# Montreal and surrounding regions
DEFAULT_REGION_IDS = ["1", "2", "3", "4", "5", "6"]


class ListingScraper:
    """Source adapter: search the listing source and fetch each result's detail page"""

    def __init__(
        self,
        fetcher: Fetcher,
        extractor: Extractor,
        base_url: Optional[str] = None,
        region_ids: Optional[List[str]] = None,
    ):
        self.fetcher = fetcher
        self.extractor = extractor
        self.base_url = (base_url or settings.SOURCE_BASE_URL).rstrip("/")
        self.region_ids = region_ids or DEFAULT_REGION_IDS

    @property
    def search_url(self) -> str:
        return f"{self.base_url}/property/api/search"

    def detail_url(self, external_id: str) -> str:
        return f"{self.base_url}/property/{external_id}"

    async def search_listings(self, listing_type: ListingType, limit: int) -> List[ListingRecord]:
        """
        Search for listings of one type and return the extracted detail records.

        A failed search request propagates. Failures on individual detail pages
        are logged and skipped; QuotaExceededError always propagates.
        """
        listing_type = ListingType(listing_type)
        logger.info(f"[SEARCH] Searching for {listing_type.value} listings (limit {limit})")

        response = await self.fetcher.fetch(
            self.search_url,
            method="POST",
            json={
                "transaction": "rent" if listing_type == ListingType.RENTAL else "sale",
                "regionIds": self.region_ids,
                "pageNumber": 1,
                "pageSize": limit,
            },
            headers={"Content-Type": "application/json", "X-Requested-With": "XMLHttpRequest"},
        )
        external_ids = self._parse_search_results(response, limit)
        logger.info(f"[SEARCH] Found {len(external_ids)} {listing_type.value} listings")

        listings = []
        for external_id in external_ids:
            try:
                listings.append(await self.get_listing_details(external_id, listing_type))
            except (TransportError, ExtractionFailure) as e:
                logger.warning(f"[SEARCH] Skipping listing {external_id}: {e}")
        return listings

    def _parse_search_results(self, response, limit: int) -> List[str]:
        try:
            payload: Any = response.json()
        except ValueError as e:
            raise ExtractionFailure(f"Search response is not valid JSON: {e}", url=self.search_url) from e

        if isinstance(payload, dict):
            results = payload.get("properties") or payload.get("results") or []
        elif isinstance(payload, list):
            results = payload
        else:
            results = []

        external_ids = []
        for item in results:
            if isinstance(item, dict):
                value = item.get("id") or item.get("external_id") or item.get("mls_number")
            else:
                value = item
            if value not in (None, ""):
                external_ids.append(str(value))
        return external_ids[:limit]

    async def get_listing_details(
        self, external_id: str, listing_type: Optional[ListingType] = None
    ) -> ListingRecord:
        url = self.detail_url(external_id)
        logger.debug(f"Getting details for listing {external_id}")
        response = await self.fetcher.fetch(url)
        listing = self.extractor.extract(response.text, url=url)

        updates: Dict[str, Any] = {}
        if listing.external_id != str(external_id):
            logger.debug(f"Listing {external_id} reported identifier {listing.external_id}, keeping {external_id}")
            updates["external_id"] = str(external_id)
        if listing.listing_type is None and listing_type is not None:
            updates["listing_type"] = ListingType(listing_type).value
        return listing.model_copy(update=updates) if updates else listing
