import base64
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel

MessageKind = Literal["text", "image", "unsupported"]


class InboundEvent(BaseModel):
    """One inbound customer message, already unwrapped from the channel payload."""

    phone: str
    display_name: Optional[str] = None
    message_type: MessageKind = "text"
    text: str = ""
    media_id: Optional[str] = None
    media_mime_type: Optional[str] = None
    external_message_id: Optional[str] = None
    sent_at: Optional[datetime] = None

    @property
    def log_text(self) -> str:
        """Text as it is recorded in the chat log."""
        if self.text.strip():
            return self.text.strip()
        return f"[{self.message_type}]"


class InlineImage(BaseModel):
    """Downloaded media passed to the model alongside the text."""

    mime_type: str
    data: bytes

    @property
    def data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"
