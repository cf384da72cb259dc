import time
from typing import Dict, Optional


class Metrics:
    def __init__(self) -> None:
        self.counters: Dict[str, int] = {}
        self.started_at = time.time()
        self.last_reply_ts: Optional[float] = None

    def inc(self, key: str, count: int = 1) -> None:
        self.counters[key] = self.counters.get(key, 0) + count

    def get(self, key: str) -> int:
        return self.counters.get(key, 0)

    def observe_reply(self) -> None:
        self.last_reply_ts = time.time()
        self.inc("replies")

    def as_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {"uptime_sec": int(time.time() - self.started_at)}
        data.update(self.counters)
        if self.last_reply_ts:
            data["last_reply_ago_sec"] = int(time.time() - self.last_reply_ts)
        return data

    def snapshot(self) -> str:
        uptime = int(time.time() - self.started_at)
        parts = [
            f"Uptime: {uptime}s",
            f"Messages: {self.get('messages')}",
            f"Replies: {self.get('replies')}",
            f"Rate limited: {self.get('rate_limited')}",
            f"Reconnects: {self.get('reconnects')}",
            f"Errors: {self.get('errors')}",
        ]
        if self.last_reply_ts:
            ago = int(time.time() - self.last_reply_ts)
            parts.append(f"Last reply: {ago}s ago")
        return "\n".join(parts)
