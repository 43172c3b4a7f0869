"""
Inbound WhatsApp events (Evolution API webhook).

Only `messages.upsert` events that are replies from a person are acted on:
not sent by us (`fromMe`) and not from a group (`…@g.us`). The sender is
matched to an owner by the last 9 digits of the phone number, which
ignores country code and area-code formatting differences.
"""
from __future__ import annotations

import re
import structlog
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy import select

from config.logging import mask_phone
from database.models import OwnerRow
from database.session import Database

logger = structlog.get_logger()

REPLY_EVENTS = {"messages.upsert", "MESSAGES_UPSERT"}
MATCH_DIGITS = 9


class InboundReply(BaseModel):
    phone: str
    text: str = ""
    push_name: str = ""
    provider_message_id: str = ""
    owner_id: Optional[str] = None
    owner_name: Optional[str] = None


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def parse_reply(payload: dict[str, Any]) -> Optional[InboundReply]:
    """Extract a person-to-us text reply, or None for anything else."""
    event = payload.get("event")
    if not isinstance(event, str) or event not in REPLY_EVENTS:
        return None
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        return None
    key = data.get("key") or {}
    if not isinstance(key, dict) or key.get("fromMe"):
        return None

    jid = key.get("remoteJid") or ""
    if not isinstance(jid, str):
        return None
    if jid.endswith("@g.us"):
        return None
    phone = _digits(jid.split("@")[0])
    if not phone:
        return None

    message = data.get("message") or {}
    if not isinstance(message, dict):
        message = {}
    extended = message.get("extendedTextMessage") or {}
    text = message.get("conversation") or (
        extended.get("text") if isinstance(extended, dict) else "")
    return InboundReply(
        phone=phone,
        text=_text(text),
        push_name=_text(data.get("pushName")),
        provider_message_id=_text(key.get("id")),
    )


async def match_owner(db: Database, phone: str) -> Optional[tuple[str, str]]:
    """Return (owner_id, name) whose phone ends with the same 9 digits."""
    tail = _digits(phone)[-MATCH_DIGITS:]
    if len(tail) < MATCH_DIGITS:
        return None
    # narrow on the last 4 digits in SQL, stored phones may be formatted
    stmt = select(OwnerRow.id, OwnerRow.name, OwnerRow.phone).where(
        OwnerRow.phone.contains(tail[-4:], autoescape=True))
    async with db.session() as s:
        candidates = (await s.execute(stmt)).all()
    for owner_id, name, stored in candidates:
        if _digits(stored).endswith(tail):
            return owner_id, name
    return None


async def handle_webhook_event(db: Database, payload: dict[str, Any]) -> Optional[InboundReply]:
    reply = parse_reply(payload)
    if reply is None:
        logger.info("webhook_event_ignored", webhook_event=payload.get("event"))
        return None

    owner = await match_owner(db, reply.phone)
    if owner is not None:
        reply.owner_id, reply.owner_name = owner
        logger.info("inbound_reply_matched", owner_id=reply.owner_id,
                    phone=mask_phone(reply.phone), length=len(reply.text))
    else:
        logger.info("inbound_reply_unmatched", phone=mask_phone(reply.phone))
    return reply
