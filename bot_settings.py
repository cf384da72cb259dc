import copy
import dataclasses
import logging
import time
from typing import Any, Dict, Optional

from state import load_bot_settings_raw, save_bot_settings_raw

DEFAULT_BOT_CONFIGS: Dict[str, Dict[str, Any]] = {
    "menu_bot": {
        "name": "Menu Bot",
        "personality": "helpful",
        "features": {
            "autoReply": True,
            "groupReply": False,
            "menuSystem": True,
        },
        "smalltalk": False,
        "responses": {
            "default": "🤖 Hello! Please pick one of the available menus or type 'menu' to see the options.",
            "greeting": "👋 Hello and welcome! Type 'menu' to see the available options.",
            "info": "ℹ️ This is a menu bot. Type 'menu' to see the options or type the number of the menu you want.",
            "goodbye": "👋 Thank you! Type 'menu' whenever you need help again.",
            "error": "❌ A system error occurred. Please try again.",
        },
    },
}


@dataclasses.dataclass
class BotSettings:
    enabled: bool = True
    bot_type: str = "menu_bot"
    responses: Dict[str, str] = dataclasses.field(default_factory=dict)
    config: Dict[str, Any] = dataclasses.field(default_factory=dict)
    created_at: float = dataclasses.field(default_factory=time.time)
    updated_at: float = dataclasses.field(default_factory=time.time)

    @classmethod
    def for_type(cls, bot_type: str) -> "BotSettings":
        base = DEFAULT_BOT_CONFIGS.get(bot_type) or DEFAULT_BOT_CONFIGS["menu_bot"]
        config = copy.deepcopy(base)
        responses = config.pop("responses", {})
        return cls(enabled=True, bot_type=bot_type, responses=dict(responses), config=config)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "BotSettings":
        bot_type = str(raw.get("bot_type") or "menu_bot")
        settings = cls.for_type(bot_type)
        settings.enabled = bool(raw.get("enabled", True))
        if isinstance(raw.get("responses"), dict):
            settings.responses.update({str(k): str(v) for k, v in raw["responses"].items()})
        if isinstance(raw.get("config"), dict):
            settings.config.update(raw["config"])
        settings.created_at = float(raw.get("created_at") or settings.created_at)
        settings.updated_at = float(raw.get("updated_at") or settings.updated_at)
        return settings

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    def response(self, intent: str) -> str:
        return self.responses.get(intent) or self.responses.get("default") or ""


class BotSettingsStore:
    """
    Per-session bot settings. Kept in memory; when a state path is given every
    change is mirrored to it and reloaded on start.
    """

    def __init__(self, state_path: Optional[str] = None, default_bot_type: str = "menu_bot") -> None:
        self.state_path = state_path
        self.default_bot_type = default_bot_type
        self._settings: Dict[str, BotSettings] = {}

    def load(self) -> int:
        if not self.state_path:
            return 0
        for sid, raw in load_bot_settings_raw(self.state_path).items():
            try:
                self._settings[sid] = BotSettings.from_dict(raw)
            except (TypeError, ValueError) as e:
                logging.warning("Ignoring stored bot settings for %s: %s", sid, e)
        return len(self._settings)

    def _persist(self, session_id: str) -> None:
        if self.state_path and session_id in self._settings:
            save_bot_settings_raw(self.state_path, session_id, self._settings[session_id].to_dict())

    def peek(self, session_id: str) -> Optional[BotSettings]:
        return self._settings.get(session_id)

    def get(self, session_id: str) -> BotSettings:
        settings = self._settings.get(session_id)
        if settings is None:
            settings = BotSettings.for_type(self.default_bot_type)
            self._settings[session_id] = settings
            logging.info("Initialized bot settings for %s (%s)", session_id, settings.bot_type)
            self._persist(session_id)
        return settings

    def update(
        self,
        session_id: str,
        *,
        enabled: Optional[bool] = None,
        bot_type: Optional[str] = None,
        responses: Optional[Dict[str, str]] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> BotSettings:
        settings = self.get(session_id)
        if bot_type and bot_type != settings.bot_type:
            # Switching type starts from that type's defaults.
            fresh = BotSettings.for_type(bot_type)
            settings.bot_type = bot_type
            settings.responses = fresh.responses
            settings.config = fresh.config
        if enabled is not None:
            settings.enabled = bool(enabled)
        if responses:
            settings.responses.update(responses)
        if config:
            settings.config.update(config)
        settings.updated_at = time.time()
        self._persist(session_id)
        return settings

    def reset(self, session_id: str) -> BotSettings:
        bot_type = self._settings[session_id].bot_type if session_id in self._settings else self.default_bot_type
        self._settings[session_id] = BotSettings.for_type(bot_type)
        self._persist(session_id)
        return self._settings[session_id]

    def remove(self, session_id: str) -> None:
        self._settings.pop(session_id, None)
