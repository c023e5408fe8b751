import httpx
import pytest

from blindtest.services.media import TrackSearch


def deezer_item(track_id, title, artist, preview="https://cdn.test/x.mp3"):
    return {
        "id": track_id,
        "title": title,
        "artist": {"name": artist},
        "album": {"title": "Album", "cover": "c", "cover_medium": "cm", "cover_big": "cb"},
        "preview": preview,
    }


def make_search(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TrackSearch(base_url="https://api.test", client=client, **kwargs)


@pytest.mark.asyncio
async def test_search_parses_results_and_skips_unplayable():
    def handler(request):
        assert request.url.path == "/search"
        assert request.url.params["q"] == "daft punk"
        return httpx.Response(200, json={"data": [
            deezer_item(1, "One More Time", "Daft Punk"),
            deezer_item(2, "No Preview", "Daft Punk", preview=""),
        ]})

    tracks = await make_search(handler).search("daft punk")
    assert [t.title for t in tracks] == ["One More Time"]


@pytest.mark.asyncio
async def test_empty_query_does_not_hit_network():
    def handler(request):
        raise AssertionError("no request expected")

    assert await make_search(handler).search("  ") == []


@pytest.mark.asyncio
async def test_search_failure_means_no_candidates():
    def handler(request):
        raise httpx.ConnectError("down")

    assert await make_search(handler).search("anything") == []


@pytest.mark.asyncio
async def test_search_http_error_means_no_candidates():
    assert await make_search(lambda r: httpx.Response(503)).search("anything") == []


@pytest.mark.asyncio
async def test_fetch_by_id():
    def handler(request):
        if request.url.path == "/track/5":
            return httpx.Response(200, json=deezer_item(5, "Song 2", "Blur"))
        return httpx.Response(200, json={"error": {"type": "DataException", "code": 800}})

    search = make_search(handler)
    track = await search.fetch_by_id(5)
    assert track.id == "5"
    assert track.artist == "Blur"
    assert await search.fetch_by_id(6) is None


@pytest.mark.asyncio
async def test_fetch_by_id_invalid_json():
    assert await make_search(lambda r: httpx.Response(200, text="<html>")).fetch_by_id(1) is None


@pytest.mark.asyncio
async def test_test_track_tries_queries_and_caches():
    seen = []

    def handler(request):
        q = request.url.params["q"]
        seen.append(q)
        if q == "second":
            return httpx.Response(200, json={"data": [deezer_item(9, "Top 1", "Squeezie")]})
        return httpx.Response(200, json={"data": []})

    search = make_search(handler, test_queries=["first", "second", "third"])
    assert (await search.test_track()).title == "Top 1"
    assert (await search.test_track()).title == "Top 1"
    assert seen == ["first", "second"]


@pytest.mark.asyncio
async def test_test_track_missing():
    search = make_search(lambda r: httpx.Response(200, json={"data": []}), test_queries=["a"])
    assert await search.test_track() is None
