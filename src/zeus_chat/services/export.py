"""Conversation export as shareable text or a JSON-ready dict."""

from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from ..domain.models import Conversation, Message, MessageRole, utcnow

SHARE_FOOTER = "Generated by Zeus GPT"


def shareable_text(
    conversation: Optional[Conversation],
    messages: Sequence[Message],
    now: Optional[datetime] = None,
) -> str:
    if conversation is None:
        return ""
    now = now or utcnow()
    lines = [
        f"Conversation: {conversation.title}",
        f"Model: {conversation.model_id}",
        f"Date: {now.isoformat(sep=' ', timespec='seconds')}",
        "",
        "---",
        "",
    ]
    for message in messages:
        role = "You" if message.role == MessageRole.USER else "Assistant"
        lines.extend([f"{role}:", message.content, ""])
    lines.extend(["---", SHARE_FOOTER])
    return "\n".join(lines) + "\n"


def export_data(
    conversation: Optional[Conversation],
    messages: Sequence[Message],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    return {
        "conversation": conversation.model_dump(mode="json", by_alias=True) if conversation else None,
        "messages": [m.model_dump(mode="json", by_alias=True) for m in messages],
        "exportedAt": (now or utcnow()).isoformat(),
        "messageCount": len(messages),
    }
