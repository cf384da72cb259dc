from .fetcher import ExternalContentFetcher
from .resolver import MenuResolver
from .store import (
    ExternalUrl,
    JsonMenuStore,
    MenuContent,
    MenuEntry,
    MenuGroup,
    MenuStore,
    MenuStoreError,
    NoContent,
    UnderDevelopment,
)

__all__ = [
    "ExternalContentFetcher",
    "ExternalUrl",
    "JsonMenuStore",
    "MenuContent",
    "MenuEntry",
    "MenuGroup",
    "MenuResolver",
    "MenuStore",
    "MenuStoreError",
    "NoContent",
    "UnderDevelopment",
]
