from __future__ import annotations

import html
import logging
from typing import Any, Callable, Dict, Optional, Protocol

from intake.models import WorkItemRecord, format_timestamp


class ChatTransport(Protocol):
    def post_chat_message(self, chat_id: str, content: str) -> Dict[str, Any]:
        ...


def build_message(record: WorkItemRecord, url: str, tz_name: str) -> str:
    return (
        "🎫 Work Package Created!<br>"
        f"ID: #{record.id}<br>"
        f"Subject: {html.escape(record.subject)}<br>"
        f"Created: {format_timestamp(record.created_at, tz_name)}<br><br>"
        f'<a href="{html.escape(url, quote=True)}">View in OpenProject</a>'
    )


class TeamsNotifier:
    """Posts a 'work package created' message into a Teams chat."""

    def __init__(
        self,
        transport: ChatTransport,
        url_builder: Callable[[Optional[str], int], str],
        *,
        tz_name: str = "Asia/Singapore",
    ) -> None:
        self.transport = transport
        self.url_builder = url_builder
        self.tz_name = tz_name
        self.log = logging.getLogger(self.__class__.__name__)

    def notify(self, record: WorkItemRecord, chat_id: str) -> Optional[str]:
        """Post the notification and return the Teams message id, if any."""
        url = self.url_builder(record.project, record.id)
        response = self.transport.post_chat_message(chat_id, build_message(record, url, self.tz_name))
        message_id = (response or {}).get("id")
        self.log.info("Posted notification for #%s to chat %s", record.id, chat_id)
        return str(message_id) if message_id else None
