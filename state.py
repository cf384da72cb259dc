import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class SessionRecord:
    session_id: str
    status: str
    current_menu_id: Optional[Any]
    updated_at: float
    session_name: Optional[str] = None
    phone_number: Optional[str] = None


def _load_raw(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read().strip()
            if not content:
                return {}
            data = json.loads(content)
            return data if isinstance(data, dict) else {}
    except Exception as e:
        logging.exception(f"state read failed {str(e)}")
        return {}


def _save_raw(path: str, raw: Dict[str, Any]) -> None:
    try:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(raw, f, ensure_ascii=False, indent=2)
    except Exception as e:
        logging.exception(f"state write failed {str(e)}")


def load_session_records(path: str) -> Dict[str, SessionRecord]:
    """
    Returns the session mirror stored under "_sessions".

    The mirror is best-effort: the in-memory registry is the source of truth for
    whether a session is usable, this only remembers which sessions existed and
    where their menu cursor was.
    """
    raw = _load_raw(path)
    result: Dict[str, SessionRecord] = {}
    sessions = raw.get("_sessions", {}) or {}
    if not isinstance(sessions, dict):
        return result
    for sid, val in sessions.items():
        if not isinstance(val, dict):
            continue
        try:
            updated_ts = float(val.get("updated_at") or 0)
        except (TypeError, ValueError):
            updated_ts = 0.0
        result[str(sid)] = SessionRecord(
            session_id=str(sid),
            status=str(val.get("status") or "disconnected"),
            current_menu_id=val.get("current_menu_id"),
            updated_at=updated_ts,
            session_name=val.get("session_name"),
            phone_number=val.get("phone_number"),
        )
    return result


def save_session_record(path: str, record: SessionRecord) -> None:
    raw = _load_raw(path)
    sessions = raw.get("_sessions")
    if not isinstance(sessions, dict):
        sessions = {}
    sessions[record.session_id] = {
        "status": record.status,
        "current_menu_id": record.current_menu_id,
        "updated_at": record.updated_at or time.time(),
        "session_name": record.session_name or f"Session {record.session_id}",
        "phone_number": record.phone_number,
    }
    raw["_sessions"] = sessions
    _save_raw(path, raw)


def delete_session_record(path: str, session_id: str) -> None:
    raw = _load_raw(path)
    changed = False
    for section in ("_sessions", "_bot_settings"):
        data = raw.get(section)
        if isinstance(data, dict) and session_id in data:
            del data[session_id]
            changed = True
    if changed:
        _save_raw(path, raw)


def load_bot_settings_raw(path: str) -> Dict[str, Dict[str, Any]]:
    raw = _load_raw(path)
    data = raw.get("_bot_settings", {}) or {}
    if not isinstance(data, dict):
        return {}
    return {str(k): v for k, v in data.items() if isinstance(v, dict)}


def save_bot_settings_raw(path: str, session_id: str, settings: Dict[str, Any]) -> None:
    raw = _load_raw(path)
    data = raw.get("_bot_settings")
    if not isinstance(data, dict):
        data = {}
    data[session_id] = settings
    raw["_bot_settings"] = data
    _save_raw(path, raw)
