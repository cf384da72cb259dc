import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from transport import Transport, TransportError

GROUP_SUFFIX = "@g.us"
PERSONAL_SUFFIX = "@s.whatsapp.net"

RecordSendFn = Callable[[str], None]


def is_group_jid(jid: str) -> bool:
    return (jid or "").endswith(GROUP_SUFFIX)


def to_jid(to: str, is_group: bool = False) -> str:
    """Phone numbers become personal jids; anything already carrying a domain is kept."""
    to = (to or "").strip()
    if "@" in to:
        return to
    if is_group:
        return f"{to}{GROUP_SUFFIX}"
    digits = "".join(ch for ch in to if ch.isdigit())
    return f"{digits}{PERSONAL_SUFFIX}"


@dataclass
class WhatsAppIO:
    """
    Outbound sends with retries on transient transport faults.

    The processor and the gateway keep the business rules; this owns the retry
    schedule: ``attempts`` tries, sleeping ``base_delay * 2 ** attempt`` between them.
    """

    attempts: int = 3
    base_delay: float = 2.0
    record_send: Optional[RecordSendFn] = None

    async def send_text(self, transport: Transport, jid: str, text: str) -> bool:
        last = max(1, self.attempts) - 1
        for attempt in range(max(1, self.attempts)):
            try:
                await transport.send_message(jid, text)
                if self.record_send:
                    try:
                        self.record_send(jid)
                    except Exception:
                        logging.exception("record_send callback failed")
                return True
            except TransportError as e:
                if attempt == last:
                    logging.error("Failed to send message to %s after %d attempts: %s", jid, attempt + 1, e)
                    return False
                logging.warning("Send to %s failed (%d/%d): %s", jid, attempt + 1, self.attempts, e)
                await asyncio.sleep(self.base_delay * (2 ** attempt))
        return False
