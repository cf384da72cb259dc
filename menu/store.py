from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

log = logging.getLogger("menu.store")

T = TypeVar("T")

UNDER_DEVELOPMENT_MARKERS = ("in development", "masih dalam pengembangan")


class MenuStoreError(Exception):
    pass


@dataclass(frozen=True)
class NoContent:
    pass


@dataclass(frozen=True)
class UnderDevelopment:
    pass


@dataclass(frozen=True)
class ExternalUrl:
    url: str


MenuContent = Union[NoContent, UnderDevelopment, ExternalUrl]


def parse_content(raw: Any) -> MenuContent:
    """Maps the raw ``url`` column onto the tagged content variant."""
    if raw is None:
        return NoContent()
    value = str(raw).strip()
    if not value or value.upper() == "NULL":
        return NoContent()
    if value.lower() in UNDER_DEVELOPMENT_MARKERS:
        return UnderDevelopment()
    if value.lower().startswith(("http://", "https://")):
        return ExternalUrl(value)
    log.warning("Ignoring menu url that is neither a link nor a placeholder: %r", value)
    return NoContent()


@dataclass(frozen=True)
class MenuEntry:
    id: int
    group_id: Any
    parent_id: Optional[int]
    keyword: str
    description: str
    content: MenuContent = field(default_factory=NoContent)

    @property
    def is_top_level(self) -> bool:
        return self.parent_id is None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MenuEntry":
        keyword = str(row.get("keyword") or "").strip()
        if not keyword or row.get("id") is None:
            raise ValueError(f"menu row without id/keyword: {row!r}")
        return cls(
            id=row["id"],
            group_id=row.get("menu_id", row.get("group_id")),
            parent_id=row.get("parent_id"),
            keyword=keyword,
            description=str(row.get("description") or ""),
            content=parse_content(row.get("url")),
        )


@dataclass(frozen=True)
class MenuGroup:
    id: Any
    name: str
    remark: str = ""


def _by_keyword(entries: List[MenuEntry]) -> List[MenuEntry]:
    # String order on purpose: "10" sorts before "2".
    return sorted(entries, key=lambda e: e.keyword)


class MenuStore:
    """
    Read side of the menu tree.

    Subclasses provide ``_entries()`` / ``_groups()``; every public read here is
    fail-soft: a storage error is logged and becomes an empty list or ``None``
    so the bot can always fall back to a canned reply. Only ``connect()`` is
    allowed to raise.
    """

    async def connect(self, max_retries: int = 3, retry_delay: float = 2.0) -> bool:
        return True

    def is_healthy(self) -> bool:
        return True

    def close(self) -> None:
        pass

    def _entries(self) -> List[MenuEntry]:
        raise NotImplementedError

    def _groups(self) -> List[MenuGroup]:
        return []

    def _read(self, what: str, fn: Callable[[], T], default: T) -> T:
        try:
            return fn()
        except Exception as e:
            log.error("Error getting %s: %s", what, e)
            return default

    async def get_top_level(self, group_id: Any = None) -> List[MenuEntry]:
        def _q() -> List[MenuEntry]:
            return _by_keyword(
                [e for e in self._entries() if e.is_top_level and (group_id is None or e.group_id == group_id)]
            )

        return self._read("main menus", _q, [])

    async def get_children(self, parent_id: int) -> List[MenuEntry]:
        return self._read(
            "sub menus",
            lambda: _by_keyword([e for e in self._entries() if e.parent_id is not None and e.parent_id == parent_id]),
            [],
        )

    async def get_by_id(self, entry_id: int) -> Optional[MenuEntry]:
        def _q() -> Optional[MenuEntry]:
            for e in self._entries():
                if e.id == entry_id:
                    return e
            return None

        return self._read("menu by id", _q, None)

    async def find_by_keyword(self, keyword: str, group_id: Any = None) -> Optional[MenuEntry]:
        needle = (keyword or "").strip().lower()
        if not needle:
            return None

        def _q() -> Optional[MenuEntry]:
            for e in self._entries():
                if group_id is not None and e.group_id != group_id:
                    continue
                if e.keyword.lower() == needle:
                    return e
            return None

        return self._read("menu by keyword", _q, None)

    async def search_by_description(self, term: str) -> List[MenuEntry]:
        needle = (term or "").strip().lower()
        if not needle:
            return []
        return self._read(
            "menu search",
            lambda: _by_keyword([e for e in self._entries() if e.is_top_level and needle in e.description.lower()]),
            [],
        )

    async def find_by_group_id(self, group_id: Any) -> Optional[MenuEntry]:
        if group_id is None:
            return None
        top = await self.get_top_level(group_id)
        return top[0] if top else None

    async def list_groups(self) -> List[MenuGroup]:
        return self._read("menu groups", lambda: list(self._groups()), [])


# Sample content written by setup() into an empty database.
SAMPLE_GROUPS = [
    {"id": 1, "name": "Main Menu", "remark": "Main bot menu"},
    {"id": 2, "name": "Information", "remark": "Information menu"},
    {"id": 3, "name": "Services", "remark": "Services menu"},
]

SAMPLE_ENTRIES = [
    {"id": 1, "menu_id": 1, "parent_id": None, "keyword": "1", "description": "Main Menu", "url": None},
    {"id": 2, "menu_id": 1, "parent_id": None, "keyword": "2", "description": "Information", "url": None},
    {"id": 3, "menu_id": 1, "parent_id": None, "keyword": "3", "description": "Services", "url": None},
    {"id": 4, "menu_id": 2, "parent_id": None, "keyword": "21", "description": "About Us", "url": None},
    {"id": 5, "menu_id": 2, "parent_id": None, "keyword": "22", "description": "Contact", "url": None},
    {"id": 6, "menu_id": 3, "parent_id": None, "keyword": "31", "description": "Schedule", "url": None},
    {"id": 7, "menu_id": 3, "parent_id": None, "keyword": "32", "description": "Booking", "url": None},
]


class JsonMenuStore(MenuStore):
    """
    Menu tables kept in a single JSON file::

        {"tb_menu": [{id, name, remark, time_stamp}],
         "tb_botmenu": [{id, menu_id, parent_id, keyword, description, url}]}
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._data: Optional[Dict[str, List[Dict[str, Any]]]] = None
        self._cache: Optional[List[MenuEntry]] = None
        # (mtime_ns, size) of the file the current data came from.
        self._signature: Optional[tuple] = None

    @classmethod
    def from_data(cls, data: Dict[str, List[Dict[str, Any]]], path: str = "") -> "JsonMenuStore":
        store = cls(path)
        store._load(data)
        return store

    def _load(self, data: Dict[str, Any]) -> None:
        self._data = {
            "tb_menu": list(data.get("tb_menu") or []),
            "tb_botmenu": list(data.get("tb_botmenu") or []),
        }
        self._cache = None

    def _file_signature(self) -> Optional[tuple]:
        try:
            st = os.stat(self.path)
        except OSError:
            return None
        return (st.st_mtime_ns, st.st_size)

    def _read_file(self) -> Dict[str, Any]:
        self._signature = self._file_signature()
        if not os.path.exists(self.path):
            log.info("Menu database %s not found, starting empty", self.path)
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            content = f.read().strip()
        if not content:
            return {}
        data = json.loads(content)
        if not isinstance(data, dict):
            raise MenuStoreError(f"{self.path} does not contain a JSON object")
        return data

    async def connect(self, max_retries: int = 3, retry_delay: float = 2.0) -> bool:
        last_error: Optional[Exception] = None
        for attempt in range(1, max_retries + 1):
            log.info("Menu database connection attempt %d/%d", attempt, max_retries)
            try:
                data = await asyncio.to_thread(self._read_file)
                self._load(data)
                log.info("Menu database connected: %s", self.path)
                return True
            except Exception as e:
                last_error = e
                log.error("Menu database connection attempt %d failed: %s", attempt, e)
                if attempt < max_retries:
                    await asyncio.sleep(retry_delay)
                    retry_delay *= 2
        raise MenuStoreError(f"menu database unavailable after {max_retries} attempts: {last_error}")

    def is_healthy(self) -> bool:
        return self._data is not None

    def close(self) -> None:
        self._data = None
        self._cache = None

    def _require(self) -> Dict[str, List[Dict[str, Any]]]:
        if self._data is None:
            raise MenuStoreError("menu database not connected")
        self._reload_if_changed()
        return self._data

    def _reload_if_changed(self) -> None:
        """Picks up edits made by the admin editor; a broken edit keeps the last good tables."""
        if not self.path:
            return
        signature = self._file_signature()
        if signature is None or signature == self._signature:
            return
        previous = self._signature
        try:
            data = self._read_file()
        except Exception as e:
            log.warning("Menu database %s changed but could not be read, keeping previous menu: %s", self.path, e)
            return
        self._load(data)
        log.info("Menu database %s reloaded (was %s)", self.path, previous)

    def _entries(self) -> List[MenuEntry]:
        data = self._require()
        if self._cache is None:
            entries: List[MenuEntry] = []
            for row in data["tb_botmenu"]:
                if not isinstance(row, dict):
                    continue
                try:
                    entries.append(MenuEntry.from_row(row))
                except ValueError as e:
                    log.warning("Skipping malformed menu row: %s", e)
            self._cache = entries
        return self._cache

    def _groups(self) -> List[MenuGroup]:
        groups = []
        for row in self._require()["tb_menu"]:
            if isinstance(row, dict) and row.get("id") is not None:
                groups.append(MenuGroup(id=row["id"], name=str(row.get("name") or ""), remark=str(row.get("remark") or "")))
        return groups

    async def save(self) -> bool:
        data = self._require()
        if not self.path:
            return False
        try:
            await asyncio.to_thread(self._write_file, data)
            self._signature = self._file_signature()
            return True
        except OSError as e:
            log.error("Error saving menu database: %s", e)
            return False

    def _write_file(self, data: Dict[str, Any]) -> None:
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)

    async def setup(self, seed: bool = True) -> bool:
        """
        Inserts the sample groups/entries only when both tables are empty.
        Safe to call on every start; returns True when data was written.
        """
        if self._data is None:
            await self.connect()
        data = self._require()
        if not seed or data["tb_menu"] or data["tb_botmenu"]:
            return False
        stamp = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        data["tb_menu"] = [dict(g, time_stamp=stamp) for g in SAMPLE_GROUPS]
        data["tb_botmenu"] = [dict(e) for e in SAMPLE_ENTRIES]
        self._cache = None
        saved = await self.save()
        log.info("Sample menu data inserted (saved=%s)", saved)
        return True
