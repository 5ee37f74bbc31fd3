import re
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from errors import ExtractionFailure
from models import ListingImage, ListingRecord, ListingType

logger = logging.getLogger(__name__)


class Extractor(ABC):
    """Turns one fetched document into a ListingRecord"""

    @abstractmethod
    def extract(self, raw_document: Union[str, bytes, Dict[str, Any]], url: Optional[str] = None) -> ListingRecord:
        """Raise ExtractionFailure when the document is not a usable listing."""


def parse_price(value: Any) -> Optional[float]:
    """Parse prices like 1850, "1 850 $", "$1,850/month" """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    digits = re.sub(r"[^\d.]", "", str(value))
    if not digits:
        return None
    try:
        return float(digits)
    except ValueError:
        return None


class JsonListingExtractor(Extractor):
    """
    Extractor for sources that answer listing detail requests with JSON.

    Known fields are mapped onto ListingRecord; everything else is kept in
    details so nothing the source sends is lost.
    """

    ID_KEYS = ("external_id", "mls_number", "mlsNumber", "centris_id", "id")
    TYPE_ALIASES = {
        "rental": ListingType.RENTAL,
        "rent": ListingType.RENTAL,
        "location": ListingType.RENTAL,
        "purchase": ListingType.PURCHASE,
        "sale": ListingType.PURCHASE,
        "vente": ListingType.PURCHASE,
    }
    MAPPED_KEYS = set(ID_KEYS) | {"listing_type", "transaction", "url", "address", "city", "price", "images", "status"}

    def extract(self, raw_document, url=None) -> ListingRecord:
        data = self._load(raw_document, url)

        external_id = self._external_id(data, url)
        if not external_id:
            raise ExtractionFailure("Listing document has no identifier", url=url)

        listing_type = data.get("listing_type") or data.get("transaction")
        if listing_type is not None:
            listing_type = self.TYPE_ALIASES.get(str(listing_type).lower())

        details = {k: v for k, v in data.items() if k not in self.MAPPED_KEYS}

        try:
            return ListingRecord(
                external_id=external_id,
                listing_type=listing_type,
                url=data.get("url") or url,
                address=data.get("address"),
                city=data.get("city"),
                price=parse_price(data.get("price")),
                images=self._images(data.get("images")),
                details=details,
            )
        except ValidationError as e:
            raise ExtractionFailure(f"Invalid listing document: {e.error_count()} validation errors", url=url) from e

    def _load(self, raw_document, url) -> Dict[str, Any]:
        if isinstance(raw_document, (str, bytes)):
            try:
                raw_document = json.loads(raw_document)
            except ValueError as e:
                raise ExtractionFailure(f"Listing document is not valid JSON: {e}", url=url) from e
        if not isinstance(raw_document, dict):
            raise ExtractionFailure("Listing document is not an object", url=url)
        # Some endpoints wrap the payload
        for key in ("property", "listing", "data"):
            if isinstance(raw_document.get(key), dict):
                return raw_document[key]
        return raw_document

    def _external_id(self, data: Dict[str, Any], url: Optional[str]) -> Optional[str]:
        for key in self.ID_KEYS:
            value = data.get(key)
            if value not in (None, ""):
                return str(value)
        # Detail URLs end with the listing id
        if url:
            tail = url.rstrip("/").rsplit("/", 1)[-1]
            if tail.isdigit():
                return tail
        return None

    def _images(self, raw_images: Any) -> List[ListingImage]:
        images = []
        for item in raw_images or []:
            if isinstance(item, str):
                images.append(ListingImage(url=item))
            elif isinstance(item, dict) and item.get("url"):
                images.append(ListingImage(
                    url=item["url"],
                    category=item.get("category") or "general",
                    caption=item.get("caption") or "",
                ))
        return images
