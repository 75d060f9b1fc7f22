from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol


logger = logging.getLogger("app.auth.mailer")

OUTBOX_MAX_MESSAGES = 100


@dataclass(slots=True)
class OutgoingMessage:
    to: str
    subject: str
    body: str
    template: str
    sent_at: datetime


class Mailer(Protocol):
    def send(self, *, to: str, subject: str, body: str, template: str) -> None: ...


# bounded; the oldest message is dropped once the outbox is full
sent_messages: deque[OutgoingMessage] = deque(maxlen=OUTBOX_MAX_MESSAGES)


class OutboxMailer:
    """Records messages instead of delivering them; delivery lives behind the same protocol."""

    def send(self, *, to: str, subject: str, body: str, template: str) -> None:
        sent_messages.append(
            OutgoingMessage(to=to, subject=subject, body=body, template=template, sent_at=datetime.now(timezone.utc))
        )
        logger.info("mail.queued", extra={"event": template})


_mailer: Mailer = OutboxMailer()


def get_mailer() -> Mailer:
    return _mailer


def set_mailer(mailer: Mailer) -> None:
    global _mailer
    _mailer = mailer
