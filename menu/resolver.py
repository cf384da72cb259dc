from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, List, Optional

from menu import texts
from menu.fetcher import ExternalContentFetcher
from menu.store import ExternalUrl, MenuEntry, MenuStore

if TYPE_CHECKING:
    from bot_settings import BotSettings

log = logging.getLogger("menu.resolver")

MENU_COMMAND = "menu"

# Exact phrases only; used when a session's settings turn smalltalk on.
SMALLTALK_INTENTS = {
    "greeting": ("hi", "hello", "hey", "halo", "hai", "assalamualaikum"),
    "goodbye": ("bye", "thanks", "thank you", "terima kasih", "makasih"),
    "info": ("info", "help", "bantuan"),
}


def _listing(entries: List[MenuEntry]) -> str:
    return "\n".join(f"🔹 {e.keyword}. {e.description}" for e in entries)


def render_children(entry: MenuEntry, children: List[MenuEntry]) -> str:
    return texts.with_footer(
        f"📋 *{entry.description}*\n\n"
        f"{texts.SUBMENU_PROMPT}\n\n"
        f"{_listing(children)}\n\n"
        f"{texts.SUBMENU_USAGE}"
    )


def render_search_results(results: List[MenuEntry]) -> str:
    return texts.with_footer(f"{texts.SEARCH_HEADER}\n\n{_listing(results)}\n\n{texts.SEARCH_USAGE}")


def render_main_menu(entries: List[MenuEntry], last_section: Optional[MenuEntry] = None) -> str:
    parts = [texts.MAIN_MENU_HEADER, _listing(entries)]
    if last_section is not None:
        parts.append(f"↩️ Last section: {last_section.keyword}. {last_section.description}")
    parts.append(texts.MAIN_MENU_USAGE)
    return texts.with_footer("\n\n".join(parts))


class MenuResolver:
    """
    Turns one inbound text into one reply.

    Priority: literal ``menu`` → exact keyword → description search → main menu.
    A keyword that owns children lists exactly one level of them; content of the
    entry itself (url) is only used for leaves.
    """

    def __init__(self, store: MenuStore, fetcher: ExternalContentFetcher) -> None:
        self.store = store
        self.fetcher = fetcher

    async def resolve(self, raw_text: str, session: Any = None, settings: Optional["BotSettings"] = None) -> str:
        text = (raw_text or "").strip().lower()
        if not text or text == MENU_COMMAND:
            return await self.main_menu(session, settings)

        entry = await self._lookup(text, session)
        if entry is not None:
            if session is not None:
                session.current_menu_id = entry.group_id
            return await self.resolve_entry(entry)

        results = await self.store.search_by_description(text)
        if results:
            return render_search_results(results)

        reply = self._smalltalk(text, settings)
        if reply:
            return texts.with_footer(reply)
        return await self.main_menu(session, settings)

    async def _lookup(self, text: str, session: Any) -> Optional[MenuEntry]:
        group_id = getattr(session, "current_menu_id", None)
        if group_id is not None:
            entry = await self.store.find_by_keyword(text, group_id)
            if entry is not None:
                return entry
        return await self.store.find_by_keyword(text)

    async def resolve_entry(self, entry: MenuEntry) -> str:
        children = await self.store.get_children(entry.id)
        if children:
            return render_children(entry, children)
        header = f"📋 *{entry.description}*"
        if isinstance(entry.content, ExternalUrl):
            log.info("Fetching content for menu %s from %s", entry.keyword, entry.content.url)
            content = await self.fetcher.fetch(entry.content.url)
            return texts.with_footer(f"{header}\n\n{content}")
        return texts.with_footer(f"{header}\n\n{texts.UNDER_DEVELOPMENT}")

    async def main_menu(self, session: Any = None, settings: Optional["BotSettings"] = None) -> str:
        entries = await self.store.get_top_level()
        if not entries:
            default = settings.responses.get("default") if settings is not None else None
            body = f"{default}\n\n{texts.NO_MENU_AVAILABLE}" if default else texts.NO_MENU_AVAILABLE
            return texts.with_footer(body)
        last_section = await self.store.find_by_group_id(getattr(session, "current_menu_id", None))
        return render_main_menu(entries, last_section)

    def _smalltalk(self, text: str, settings: Optional["BotSettings"]) -> Optional[str]:
        if settings is None or not settings.config.get("smalltalk"):
            return None
        for intent, phrases in SMALLTALK_INTENTS.items():
            if text in phrases:
                return settings.responses.get(intent) or settings.responses.get("default")
        return None
