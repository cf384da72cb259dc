from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

import httpx

from menu import texts

log = logging.getLogger("menu.fetcher")

_ERROR_PAGE_MARKERS = ("<!DOCTYPE html>", "<html", "404 Not Found", "500 Internal Server Error")


def _scalar(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def format_json(data: Any) -> str:
    """
    Best-effort rendering of an arbitrary JSON document for a chat message.

    - list: numbered items; objects inside become ``• key: value`` lines
    - object: ``📋 key: value`` lines, list values as bullets
    - anything else: its string form
    """
    if isinstance(data, list):
        lines = []
        for index, item in enumerate(data, start=1):
            if isinstance(item, dict):
                lines.append(f"📋 Item {index}:")
                lines.extend(f"• {k}: {_scalar(v)}" for k, v in item.items())
            else:
                lines.append(f"{index}. {_scalar(item)}")
        return "\n".join(lines)
    if isinstance(data, dict):
        lines = []
        for key, value in data.items():
            if isinstance(value, list):
                lines.append(f"📋 {key}:")
                lines.extend(f"• {_scalar(item)}" for item in value)
            else:
                lines.append(f"📋 {key}: {_scalar(value)}")
        return "\n".join(lines)
    return _scalar(data)


def looks_like_error_page(text: str) -> bool:
    return any(marker in text for marker in _ERROR_PAGE_MARKERS)


def status_message(status: int) -> str:
    if status == 404:
        return texts.FETCH_NOT_FOUND
    if status == 500:
        return texts.FETCH_SERVER_PROBLEM
    if status == 403:
        return texts.FETCH_ACCESS_DENIED
    return texts.fetch_server_error(status)


class ExternalContentFetcher:
    def __init__(
        self,
        timeout_sec: float = 10.0,
        user_agent: str = "BotWA/1.0",
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ) -> None:
        self.timeout_sec = timeout_sec
        self.user_agent = user_agent
        self._client_factory = client_factory or self._default_client

    def _default_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_sec,
            headers={"User-Agent": self.user_agent},
            follow_redirects=True,
        )

    async def fetch(self, url: str) -> str:
        """Never raises: every failure is mapped onto one of the canned messages."""
        try:
            async with self._client_factory() as client:
                resp = await client.get(url)
        except httpx.TimeoutException:
            log.warning("External API timed out: %s", url)
            return texts.FETCH_TIMEOUT
        except httpx.NetworkError as e:
            log.warning("External API unreachable %s: %s", url, e)
            return texts.FETCH_UNREACHABLE
        except Exception as e:
            log.error("Error calling external API %s: %s", url, e)
            return texts.FETCH_FAILED

        if not resp.is_success:
            log.warning("External API %s answered %s", url, resp.status_code)
            return status_message(resp.status_code)

        body = resp.text
        try:
            return format_json(json.loads(body))
        except ValueError:
            pass
        if looks_like_error_page(body):
            log.warning("External API %s returned an HTML page", url)
            return texts.FETCH_ERROR_PAGE
        return body
