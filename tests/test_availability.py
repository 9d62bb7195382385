"""Tests for source URL liveness checks."""

import asyncio

import httpx
import pytest

from stac_crawler.availability import AvailabilityChecker


def checker_for(handler, **kwargs) -> AvailabilityChecker:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("retry_backoff", 0.0)
    return AvailabilityChecker(client, **kwargs)


class TestAvailabilityChecker:
    """HEAD requests, ranged GET fallback and retry policy."""

    @pytest.mark.asyncio
    async def test_ok_is_available(self):
        checker = checker_for(lambda request: httpx.Response(200))
        result = await checker.check("https://example.com/collection.json")
        assert result.available
        assert result.status_code == 200

    @pytest.mark.asyncio
    async def test_redirect_status_counts_as_available(self):
        checker = checker_for(lambda request: httpx.Response(304))
        assert (await checker.check("https://example.com/c.json")).available

    @pytest.mark.asyncio
    async def test_missing_url_is_available(self):
        checker = checker_for(lambda request: httpx.Response(500))
        assert (await checker.check(None)).available

    @pytest.mark.asyncio
    async def test_gone_statuses_not_retried(self):
        for status in (403, 404, 410):
            calls = []

            def handler(request, status=status):
                calls.append(request.method)
                return httpx.Response(status)

            result = await checker_for(handler, retry_count=3).check("https://example.com/c.json")
            assert not result.available
            assert result.status_code == status
            assert calls == ["HEAD"]

    @pytest.mark.asyncio
    async def test_server_error_retried_once(self):
        calls = []

        def handler(request):
            calls.append(request.method)
            return httpx.Response(500)

        result = await checker_for(handler, retry_count=1).check("https://example.com/c.json")
        assert not result.available
        assert result.error == "HTTP 500"
        assert calls == ["HEAD", "HEAD"]

    @pytest.mark.asyncio
    async def test_transient_failure_recovers_on_retry(self):
        calls = []

        def handler(request):
            calls.append(request.method)
            if len(calls) == 1:
                raise httpx.ConnectError("reset", request=request)
            return httpx.Response(200)

        assert (await checker_for(handler).check("https://example.com/c.json")).available

    @pytest.mark.asyncio
    async def test_head_not_allowed_falls_back_to_ranged_get(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.headers.get("Range")))
            if request.method == "HEAD":
                return httpx.Response(405)
            return httpx.Response(206, content=b"{")

        result = await checker_for(handler).check("https://example.com/c.json")
        assert result.available
        assert seen == [("HEAD", None), ("GET", "bytes=0-0")]

    @pytest.mark.asyncio
    async def test_check_many_dedupes_and_bounds_concurrency(self):
        in_flight = 0
        peak = 0
        checked = []

        class CountingChecker(AvailabilityChecker):
            async def _ping(self, url):
                nonlocal in_flight, peak
                checked.append(url)
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.005)
                in_flight -= 1
                return await super()._ping(url)

        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        checker = CountingChecker(client, concurrency=2, retry_backoff=0.0)
        urls = [f"https://example.com/c{i}.json" for i in range(6)] + ["https://example.com/c0.json"]

        results = await checker.check_many(urls)
        assert len(results) == 6
        assert len(checked) == 6
        assert peak <= 2
        assert all(result.available for result in results.values())

    @pytest.mark.asyncio
    async def test_unbuildable_url_is_unavailable(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(200)

        result = await checker_for(handler).check("https://example.com/bad\x00.json")
        assert result.available is False
        assert result.status_code is None
        assert "InvalidURL" in result.error
        assert calls == []

    @pytest.mark.asyncio
    async def test_check_many_isolates_unexpected_errors(self):
        class FlakyChecker(AvailabilityChecker):
            async def _ping(self, url):
                if url.endswith("broken.json"):
                    raise RuntimeError("resolver exploded")
                return await super()._ping(url)

        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        checker = FlakyChecker(client, retry_backoff=0.0)
        urls = ["https://example.com/a.json", "https://example.com/broken.json", "https://example.com/b.json"]

        results = await checker.check_many(urls)
        assert set(results) == set(urls)
        assert results["https://example.com/a.json"].available
        assert results["https://example.com/b.json"].available
        broken = results["https://example.com/broken.json"]
        assert broken.available is False
        assert broken.error == "RuntimeError: resolver exploded"

    def test_from_settings(self, settings_factory):
        settings = settings_factory(availability_timeout=3.0, availability_retry_count=2, availability_concurrency=4)
        checker = AvailabilityChecker.from_settings(httpx.AsyncClient(), settings)
        assert checker.timeout == 3.0
        assert checker.retry_count == 2
        assert checker.concurrency == 4
