"""
Inbound message events, as emitted by the protocol client.

Only the addressing and metadata fields the storage layer reads are modelled.
The message payload stays opaque; see payload.py for the helpers that read it.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from chatstore.errors import InvalidInputError

DEFAULT_USER_SERVER = "s.whatsapp.net"
GROUP_SERVER = "g.us"
NEWSLETTER_SERVER = "newsletter"
BROADCAST_SERVER = "broadcast"
HIDDEN_USER_SERVER = "lid"


class JID(BaseModel):
    """
    Address of a contact, group, or newsletter: ``user[:device]@server``.
    """
    user: str = ""
    server: str = ""
    device: int = 0

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, value: str) -> "JID":
        """
        Parse "user@server" or "user:device@server"; a bare server is allowed.

        Raises:
            InvalidInputError: the device part is not a number
        """
        if "@" not in value:
            return cls(server=value)
        user, server = value.split("@", 1)
        device = 0
        if ":" in user:
            user, raw_device = user.split(":", 1)
            try:
                device = int(raw_device)
            except ValueError:
                raise InvalidInputError(f"invalid JID {value!r}: device must be numeric") from None
        return cls(user=user, server=server, device=device)

    @property
    def is_group(self) -> bool:
        return self.server == GROUP_SERVER

    @property
    def is_newsletter(self) -> bool:
        return self.server == NEWSLETTER_SERVER

    def __str__(self) -> str:
        if not self.user:
            return self.server
        if self.device:
            return f"{self.user}:{self.device}@{self.server}"
        return f"{self.user}@{self.server}"


class MessageInfo(BaseModel):
    """Addressing and metadata of one message event."""
    chat: JID
    sender: JID
    id: str = Field(..., min_length=1)
    timestamp: datetime
    is_from_me: bool = False
    # Display-name hint supplied by the sender; may be empty
    push_name: str = ""


class MessageEvent(BaseModel):
    """
    One message event. ``message`` is the protocol payload in its JSON
    form, or None for events that carry no message.
    """
    info: MessageInfo
    message: Optional[Any] = None
