"""
Boundary to the WhatsApp client library.

The gateway never speaks the protocol itself. A ``TransportFactory`` opens one
connection per session and reports lifecycle/inbound events through the sink it
was given; the returned ``Transport`` handle carries the outbound calls.
"""

from __future__ import annotations

import abc
import base64
import importlib
import io
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Union


class TransportError(Exception):
    """Retryable transport fault (send failure, dropped socket)."""


class DisconnectReason:
    # Close codes as reported by the multi-device client library.
    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411

    @classmethod
    def is_terminal(cls, code: Optional[int]) -> bool:
        return code == cls.LOGGED_OUT


@dataclass
class Group:
    id: str
    name: str


@dataclass
class QrEvent:
    payload: str


@dataclass
class OpenEvent:
    pass


@dataclass
class CloseEvent:
    reason_code: Optional[int] = None


@dataclass
class MessageEvent:
    contact_id: str
    text: str
    from_me: bool = False
    message_id: Optional[str] = None


@dataclass
class DecryptionFailedEvent:
    contact_id: str
    error: str = ""


@dataclass
class TransportErrorEvent:
    error: str = ""


TransportEvent = Union[QrEvent, OpenEvent, CloseEvent, MessageEvent, DecryptionFailedEvent, TransportErrorEvent]
EventSink = Callable[[TransportEvent], None]


class Transport(abc.ABC):
    @abc.abstractmethod
    async def send_message(self, contact_id: str, text: str) -> None:
        ...

    @abc.abstractmethod
    async def logout(self) -> None:
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        """Drop the connection without invalidating the pairing."""

    @abc.abstractmethod
    async def fetch_groups(self) -> List[Group]:
        ...

    @abc.abstractmethod
    async def send_presence(self, presence: str = "available") -> None:
        ...

    @abc.abstractmethod
    async def clear_session_data(self, contact_id: str) -> None:
        ...

    @abc.abstractmethod
    async def request_fresh_keys(self, contact_id: str) -> None:
        ...


TransportFactory = Callable[[str, str, EventSink], Awaitable[Transport]]


def render_qr(payload: str) -> str:
    """Renders a pairing payload into an SVG data URL for the operator UI."""
    import qrcode
    import qrcode.image.svg

    img = qrcode.make(payload, image_factory=qrcode.image.svg.SvgPathImage)
    buf = io.BytesIO()
    img.save(buf)
    encoded = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


def load_transport_factory(target: str) -> TransportFactory:
    """Resolves ``package.module:callable`` from configuration."""
    module_name, sep, attr = (target or "").partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"transport factory must look like 'package.module:callable', got {target!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"{target} is not callable")
    return factory
