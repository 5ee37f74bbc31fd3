#!/usr/bin/env python3
"""
Tests for the JSON listing extractor
"""

import sys
import json
import pytest
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from errors import ExtractionFailure
from extractor import JsonListingExtractor, parse_price


class TestParsePrice:

    @pytest.mark.parametrize("raw,expected", [
        (1850, 1850.0),
        ("1 850 $", 1850.0),
        ("$1,850/month", 1850.0),
        ("", None),
        (None, None),
        ("Prix sur demande", None),
    ])
    def test_parse_price(self, raw, expected):
        assert parse_price(raw) == expected


class TestJsonListingExtractor:

    @pytest.fixture
    def extractor(self):
        return JsonListingExtractor()

    def test_maps_known_fields(self, extractor):
        doc = {
            "mls_number": "12345678",
            "transaction": "rent",
            "address": "100 Rue Sherbrooke",
            "city": "Montreal",
            "price": "2 100 $",
            "bedrooms": 2,
            "images": [
                "https://img.test/a.jpg",
                {"url": "https://img.test/b.jpg", "category": "kitchen", "caption": "Cuisine"},
                {"caption": "no url"},
            ],
        }
        listing = extractor.extract(json.dumps(doc), url="https://listings.test/property/12345678")

        assert listing.external_id == "12345678"
        assert listing.listing_type == "rental"
        assert listing.price == 2100.0
        assert listing.url == "https://listings.test/property/12345678"
        assert [i.url for i in listing.images] == ["https://img.test/a.jpg", "https://img.test/b.jpg"]
        assert listing.images[1].category == "kitchen"
        assert listing.details == {"bedrooms": 2}

    def test_unwraps_payload(self, extractor):
        listing = extractor.extract({"property": {"id": 42, "listing_type": "sale"}})
        assert listing.external_id == "42"
        assert listing.listing_type == "purchase"

    def test_identifier_from_detail_url(self, extractor):
        listing = extractor.extract("{}", url="https://listings.test/property/987/")
        assert listing.external_id == "987"

    def test_unknown_listing_type_left_empty(self, extractor):
        listing = extractor.extract({"id": "1", "transaction": "auction"})
        assert listing.listing_type is None

    def test_invalid_json(self, extractor):
        with pytest.raises(ExtractionFailure) as exc_info:
            extractor.extract("<html></html>", url="https://listings.test/property/1")
        assert "https://listings.test/property/1" in str(exc_info.value)

    def test_missing_identifier(self, extractor):
        with pytest.raises(ExtractionFailure):
            extractor.extract({"address": "somewhere"}, url="https://listings.test/search")

    def test_non_object_document(self, extractor):
        with pytest.raises(ExtractionFailure):
            extractor.extract("[1, 2, 3]")
