"""Tests for link resolution and collections endpoint discovery."""

from stac_crawler.links import (
    child_links,
    declared_source_url,
    fallback_collections_url,
    find_collections_endpoint,
    next_link,
    resolve_link,
)


class TestResolveLink:
    """resolve_link turns hrefs into fetchable URLs."""

    def test_relative_href_resolves_against_document(self):
        url = resolve_link("./sub/catalog.json", "https://example.com/stac/catalog.json")
        assert url == "https://example.com/stac/sub/catalog.json"

    def test_parent_relative_href(self):
        url = resolve_link("../other/collection.json", "https://example.com/stac/a/catalog.json")
        assert url == "https://example.com/stac/other/collection.json"

    def test_absolute_href_kept(self):
        assert resolve_link("https://other.org/x.json", "https://example.com/") == "https://other.org/x.json"

    def test_s3_href_rewritten(self):
        url = resolve_link("s3://my-bucket/path/to/catalog.json", "https://example.com/")
        assert url == "https://my-bucket.s3.amazonaws.com/path/to/catalog.json"

    def test_malformed_s3_href_skipped(self):
        assert resolve_link("s3://bucket-only", "https://example.com/") is None

    def test_non_http_scheme_skipped(self):
        assert resolve_link("ftp://example.com/data.json", "https://example.com/") is None
        assert resolve_link("mailto:someone@example.com", "https://example.com/") is None

    def test_empty_or_missing_href(self):
        assert resolve_link("", "https://example.com/") is None
        assert resolve_link(None, "https://example.com/") is None

    def test_control_characters_skipped(self):
        assert resolve_link("./bad\x00.json", "https://example.com/stac/catalog.json") is None

    def test_unbalanced_ipv6_host_skipped(self):
        assert resolve_link("http://[::1/catalog.json", "https://example.com/") is None

    def test_bad_declared_self_link_falls_back_to_crawled_url(self):
        links = [{"rel": "self", "href": "https://example.com/c\x00.json"}]
        assert declared_source_url(links, "https://example.com/c.json") == "https://example.com/c.json"


class TestCollectionsEndpoint:
    """Collections endpoint discovery for STAC APIs."""

    def test_advertised_data_link_preferred(self):
        data = {"links": [{"rel": "data", "href": "/api/v1/collections"}]}
        assert find_collections_endpoint(data, "https://example.com/api/v1") == "https://example.com/api/v1/collections"

    def test_fallback_appends_collections(self):
        assert fallback_collections_url("https://example.com/api/v1") == "https://example.com/api/v1/collections"

    def test_fallback_drops_file_segment(self):
        assert fallback_collections_url("https://example.com/stac/catalog.json") == "https://example.com/stac/collections"

    def test_fallback_strips_catalog_path(self):
        assert fallback_collections_url("https://example.com/api/catalogs/landsat") == "https://example.com/api/collections"

    def test_no_links_uses_fallback(self):
        assert find_collections_endpoint({}, "https://example.com/stac") == "https://example.com/stac/collections"


class TestChildLinks:
    def test_static_catalog_only_child_rel(self):
        data = {
            "links": [
                {"rel": "child", "href": "a.json"},
                {"rel": "self", "href": "catalog.json"},
                {"rel": "item", "href": "item.json"},
            ]
        }
        assert [link["href"] for link in child_links(data)] == ["a.json"]

    def test_api_root_skips_non_traversal_rels(self):
        data = {
            "links": [
                {"rel": "self", "href": "/"},
                {"rel": "conformance", "href": "/conformance"},
                {"rel": "search", "href": "/search"},
                {"rel": "data", "href": "/collections"},
                {"rel": "service-doc", "href": "/docs", "type": "text/html"},
                {"rel": "child", "href": "/catalogs/a"},
                {"rel": "related", "href": "/other.json", "type": "application/json"},
                {"rel": "related", "href": "/page.html", "type": "text/html"},
            ]
        }
        hrefs = [link["href"] for link in child_links(data, is_api=True)]
        assert hrefs == ["/catalogs/a", "/other.json"]


class TestNextLinkAndSource:
    def test_next_link_resolved(self):
        data = {"links": [{"rel": "next", "href": "?page=2"}]}
        assert next_link(data, "https://example.com/collections") == "https://example.com/collections?page=2"

    def test_post_next_link_ignored(self):
        data = {"links": [{"rel": "next", "href": "/search", "method": "POST"}]}
        assert next_link(data, "https://example.com/collections") is None

    def test_declared_source_prefers_self(self):
        links = [{"rel": "root", "href": "/root.json"}, {"rel": "self", "href": "/c/self.json"}]
        assert declared_source_url(links, "https://example.com/c/x.json") == "https://example.com/c/self.json"

    def test_declared_source_falls_back_to_crawled_url(self):
        assert declared_source_url([], "https://example.com/c/x.json") == "https://example.com/c/x.json"
