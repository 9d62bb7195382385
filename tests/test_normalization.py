"""Tests for collection, summary and seed entry normalization."""

import json

from stac_crawler.models import PLACEHOLDER_ID, DocumentKind
from stac_crawler.normalization import (
    classify_summary,
    derive_categories,
    extract_bbox,
    extract_temporal_interval,
    normalize_catalog,
    normalize_collection,
    normalize_seed_entry,
    stac_key,
)


class TestExtents:
    """Modern and legacy extent shapes yield the same values."""

    def test_modern_extent(self):
        data = {
            "extent": {
                "spatial": {"bbox": [[-10.0, -5.0, 10.0, 5.0], [0, 0, 1, 1]]},
                "temporal": {"interval": [["2020-01-01T00:00:00Z", None]]},
            }
        }
        assert extract_bbox(data) == [-10.0, -5.0, 10.0, 5.0]
        assert extract_temporal_interval(data) == ("2020-01-01T00:00:00Z", None)

    def test_legacy_extent(self):
        data = {"extent": {"spatial": [-10.0, -5.0, 10.0, 5.0], "temporal": ["2019-01-01", "2019-12-31"]}}
        assert extract_bbox(data) == [-10.0, -5.0, 10.0, 5.0]
        assert extract_temporal_interval(data) == ("2019-01-01", "2019-12-31")

    def test_three_dimensional_bbox(self):
        data = {"extent": {"spatial": {"bbox": [[0, 0, -100, 1, 1, 100]]}}}
        assert extract_bbox(data) == [0, 0, -100, 1, 1, 100]

    def test_missing_or_malformed_extent(self):
        assert extract_bbox({}) is None
        assert extract_bbox({"extent": {"spatial": {"bbox": [["a", "b"]]}}}) is None
        assert extract_temporal_interval({}) == (None, None)


class TestNormalizeCollection:
    def test_full_collection(self):
        data = {
            "id": "sentinel-2",
            "title": "Sentinel 2",
            "description": "Optical imagery",
            "license": "proprietary",
            "stac_version": "1.0.0",
            "keywords": ["optical", None, "esa"],
            "providers": [{"name": "ESA"}, "junk"],
            "extent": {"spatial": {"bbox": [[-180, -90, 180, 90]]}, "temporal": {"interval": [[None, None]]}},
            "links": [{"rel": "self", "href": "https://example.com/collections/sentinel-2"}],
        }
        record = normalize_collection(
            data,
            crawled_url="https://example.com/api/collections/sentinel-2",
            source_slug="earth-search",
            crawl_log_catalog_id=3,
            is_api=True,
        )
        assert record.kind is DocumentKind.COLLECTION
        assert record.id == "sentinel-2"
        assert not record.id_is_placeholder
        assert record.keywords == ["optical", "esa"]
        assert record.providers == [{"name": "ESA"}]
        assert record.source_url == "https://example.com/collections/sentinel-2"
        assert record.crawled_url == "https://example.com/api/collections/sentinel-2"
        assert record.crawl_log_catalog_id == 3
        assert record.raw is data
        assert stac_key(record) == "earth-search_sentinel-2"

    def test_missing_id_gets_placeholder(self):
        record = normalize_collection({"title": "No id", "extent": {}}, crawled_url="https://example.com/c.json")
        assert record.id == PLACEHOLDER_ID
        assert record.id_is_placeholder
        assert stac_key(record) is None
        assert record.display_title == "No id"

    def test_description_falls_back_to_summary(self):
        record = normalize_collection({"id": "x", "summary": "short text"})
        assert record.description == "short text"

    def test_stac_key_without_slug(self):
        assert stac_key(normalize_collection({"id": "x"})) == "x"

    def test_catalog_record(self):
        record = normalize_catalog({"id": "root", "links": [{"rel": "child", "href": "a.json"}]}, "https://example.com/catalog.json")
        assert record.kind is DocumentKind.CATALOG
        assert record.source_url == "https://example.com/catalog.json"
        assert len(record.links) == 1


class TestClassifySummary:
    def test_numeric_pair_is_range(self):
        assert classify_summary([0, 100]) == {"kind": "range", "range_min": 0, "range_max": 100}

    def test_min_max_object_is_range(self):
        summary = classify_summary({"minimum": 1.5, "maximum": 7})
        assert summary["kind"] == "range"
        assert summary["range_min"] == 1.5
        assert summary["range_max"] == 7

    def test_list_is_set(self):
        summary = classify_summary(["B01", "B02", "B03"])
        assert summary["kind"] == "set"
        assert json.loads(summary["set_value"]) == ["B01", "B02", "B03"]

    def test_other_object_is_schema(self):
        summary = classify_summary({"type": "string", "enum": ["a"]})
        assert summary["kind"] == "schema"
        assert json.loads(summary["json_schema"])["type"] == "string"

    def test_scalar_is_value(self):
        assert classify_summary(42) == {"kind": "value", "set_value": "42"}


class TestSeedEntries:
    def test_seed_entry_fields(self):
        entry = {
            "id": "earth-search",
            "slug": "earth-search",
            "title": "Earth Search",
            "url": " https://earth-search.aws.element84.com/v1 ",
            "isApi": True,
            "summary": "AWS open data",
            "tags": ["aws", "sentinel"],
        }
        seed = normalize_seed_entry(entry)
        assert seed.url == "https://earth-search.aws.element84.com/v1"
        assert seed.slug == "earth-search"
        assert seed.is_api is True
        assert seed.is_private is False
        assert seed.categories == ("aws", "sentinel")

    def test_entry_without_url_dropped(self):
        assert normalize_seed_entry({"id": "x", "title": "X"}) is None
        assert normalize_seed_entry({"url": "   "}) is None

    def test_slug_falls_back_to_id(self):
        seed = normalize_seed_entry({"id": 17, "url": "https://example.com/catalog.json"})
        assert seed.slug == "17"
        assert seed.title == "17"

    def test_category_fallbacks(self):
        assert derive_categories({"categories": ["a"], "keywords": ["b"]}) == ["a"]
        assert derive_categories({"keywords": ["b"]}) == ["b"]
        assert derive_categories({"access": "public"}) == ["public"]
        assert derive_categories({}) == []
