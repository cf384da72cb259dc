import asyncio
import json

import httpx

from menu import texts
from menu.fetcher import ExternalContentFetcher, format_json, looks_like_error_page


def _fetcher(handler):
    return ExternalContentFetcher(
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )


def _fetch(handler, url="https://api.example.com/data"):
    return asyncio.run(_fetcher(handler).fetch(url))


def test_not_found_maps_to_canned_message():
    out = _fetch(lambda request: httpx.Response(404, text="nope"))
    assert out == texts.FETCH_NOT_FOUND
    assert "nope" not in out
    assert out.endswith(texts.FOOTER)


def test_server_error_and_forbidden():
    assert _fetch(lambda request: httpx.Response(500, text="trace")) == texts.FETCH_SERVER_PROBLEM
    assert _fetch(lambda request: httpx.Response(403)) == texts.FETCH_ACCESS_DENIED


def test_other_status_mentions_code():
    out = _fetch(lambda request: httpx.Response(502))
    assert "502" in out
    assert out.endswith(texts.FOOTER)


def test_timeout_maps_to_timeout_message():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    assert _fetch(handler) == texts.FETCH_TIMEOUT


def test_connect_error_maps_to_unreachable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    assert _fetch(handler) == texts.FETCH_UNREACHABLE


def test_unexpected_error_maps_to_generic_failure():
    def handler(request):
        raise RuntimeError("bug")

    assert _fetch(handler) == texts.FETCH_FAILED


def test_json_list_of_objects_is_formatted():
    body = [{"name": "Ana", "active": True}, {"name": "Budi", "active": None}]
    out = _fetch(lambda request: httpx.Response(200, json=body))
    assert out == "\n".join(
        [
            "📋 Item 1:",
            "• name: Ana",
            "• active: true",
            "📋 Item 2:",
            "• name: Budi",
            "• active: null",
        ]
    )


def test_json_object_is_formatted():
    body = {"title": "Schedule", "days": ["Mon", "Tue"], "meta": {"v": 1}}
    out = _fetch(lambda request: httpx.Response(200, json=body))
    assert out.splitlines() == [
        "📋 title: Schedule",
        "📋 days:",
        "• Mon",
        "• Tue",
        '📋 meta: {"v": 1}',
    ]


def test_plain_list_and_scalar():
    assert format_json(["a", 2]) == "1. a\n2. 2"
    assert format_json(42) == "42"


def test_html_error_page_is_not_leaked():
    page = "<!DOCTYPE html><html><body>500 Internal Server Error</body></html>"
    out = _fetch(lambda request: httpx.Response(200, text=page))
    assert out == texts.FETCH_ERROR_PAGE
    assert "<html" not in out


def test_plain_text_is_returned_as_is():
    out = _fetch(lambda request: httpx.Response(200, text="Open 08:00-16:00"))
    assert out == "Open 08:00-16:00"


def test_json_is_tried_before_html_sniff():
    body = {"note": "<html> tags are fine inside data"}
    out = _fetch(lambda request: httpx.Response(200, text=json.dumps(body)))
    assert out == "📋 note: <html> tags are fine inside data"


def test_looks_like_error_page():
    assert looks_like_error_page("<html><body>x</body></html>")
    assert not looks_like_error_page("all good")


def test_default_client_sends_user_agent(monkeypatch):
    seen = {}
    real_client = httpx.AsyncClient

    def handler(request):
        seen["ua"] = request.headers.get("User-Agent")
        return httpx.Response(200, text="ok")

    def _client(**kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(**kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", _client)
    out = asyncio.run(ExternalContentFetcher(user_agent="BotWA/1.0").fetch("https://api.example.com"))
    assert out == "ok"
    assert seen["ua"] == "BotWA/1.0"
