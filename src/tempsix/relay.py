"""Message relay for tempsix.

Delivery is consume-on-read: ``receive`` returns a page of messages and deletes
exactly those messages. A client that fetches a page owns it from then on.

Known race (accepted, not masked):
    ``receive`` selects a page and then deletes it by id; the two statements
    are not atomic together. Two concurrent ``receive`` calls for the same
    recipient can both select a message before either deletes it, and both
    return it. For a single recipient polling its own inbox this window is
    small. It is made observable: when the delete removes fewer rows than were
    returned, the overlap is logged and counted as ``receive_overlap``.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
import sqlite3
from datetime import datetime
from typing import Any

from . import db
from .allocator import is_valid_code
from .errors import (
    InvalidId,
    InvalidMessage,
    RecipientNotFound,
    SelfSend,
    SenderNotFound,
    UserNotFound,
)
from .metrics import metrics

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 1000
DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100

# One character followed by ten or more copies of itself
REPEATED_CHARACTER_PATTERN = re.compile(r"(.)\1{10,}", re.DOTALL)
URL_PATTERN = re.compile(r"https?://\S+", re.IGNORECASE)
SPAM_PATTERNS = (REPEATED_CHARACTER_PATTERN, URL_PATTERN)

_WHITESPACE_RUN = re.compile(r"\s+")


# --- Content helpers ---


def normalize_content(text: str) -> str:
    """Trim outer whitespace and collapse inner whitespace runs to one space."""
    return _WHITESPACE_RUN.sub(" ", text.strip())


def validate_message(content: Any) -> str:
    """Validate message content and return its normalized form.

    The length limit and the spam heuristics apply to the trimmed text, so a
    run of whitespace counts as repeated characters like any other.

    Raises:
        InvalidMessage: with the reason as message.
    """
    if not content or not isinstance(content, str):
        raise InvalidMessage("Message content is required")

    trimmed = content.strip()

    if len(trimmed) == 0:
        raise InvalidMessage("Message cannot be empty")

    if len(trimmed) > MAX_CONTENT_LENGTH:
        raise InvalidMessage(f"Message too long (max {MAX_CONTENT_LENGTH} characters)")

    for pattern in SPAM_PATTERNS:
        if pattern.search(trimmed):
            raise InvalidMessage("Message appears to be spam")

    return normalize_content(trimmed)


def create_fingerprint(
    ip: str | None,
    user_agent: str | None = None,
    accept_language: str | None = None,
) -> str:
    """Derive a coarse, non-identifying spam signal from connection attributes."""
    components = [ip or "", user_agent or "", accept_language or ""]
    return hashlib.sha256("|".join(components).encode()).hexdigest()


# --- Operations ---


def send(
    sender_id: str,
    recipient_id: str,
    content: Any,
    fingerprint: str | None = None,
    *,
    ip: str | None = None,
    user_agent: str | None = None,
    accept_language: str | None = None,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Send a message. Returns {message_id, timestamp}.

    When no fingerprint is supplied it is derived from ip, user_agent and
    accept_language. On success exactly one message is created and the
    recipient's last_active_at is refreshed.

    Raises:
        InvalidId, SelfSend, InvalidMessage, SenderNotFound, RecipientNotFound
    """
    if not is_valid_code(sender_id) or not is_valid_code(recipient_id):
        raise InvalidId()

    if sender_id == recipient_id:
        raise SelfSend()

    normalized = validate_message(content)

    with db.store_operation("send"):
        if not db.identity_exists(sender_id, conn=conn):
            raise SenderNotFound()
        if not db.identity_exists(recipient_id, conn=conn):
            raise RecipientNotFound()

        result = db.insert_message(
            sender_id,
            recipient_id,
            normalized,
            sender_fingerprint=fingerprint or create_fingerprint(ip, user_agent, accept_language),
            now=now,
            conn=conn,
        )
        db.touch_identity(recipient_id, now=now, conn=conn)

    metrics.increment("messages_sent")
    logger.info(f"Message sent from {sender_id} to {recipient_id}")

    return {"message_id": result["mid"], "timestamp": result["created_at"]}


def clamp_pagination(
    page: Any,
    limit: Any,
    max_limit: int = MAX_PAGE_LIMIT,
    default_limit: int = DEFAULT_PAGE_LIMIT,
) -> tuple[int, int]:
    """Coerce page/limit into page >= 1 and 1 <= limit <= max_limit."""
    try:
        page = int(page)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = default_limit

    return max(page, 1), min(max(limit, 1), max_limit)


def receive(
    recipient_id: str,
    page: int = 1,
    limit: int = DEFAULT_PAGE_LIMIT,
    unread_only: bool = False,
    *,
    max_limit: int = MAX_PAGE_LIMIT,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Fetch a page of messages and delete every message returned.

    Pagination metadata describes what is left after this call's deletions.
    ``unread_count`` is only included when not already filtering to unread.

    Raises:
        RecipientNotFound
    """
    page, limit = clamp_pagination(page, limit, max_limit=max_limit)
    skip = (page - 1) * limit

    with db.store_operation("receive"):
        if not db.identity_exists(recipient_id, conn=conn):
            raise RecipientNotFound()

        total_before = db.count_messages(recipient_id, unread_only=unread_only, conn=conn)
        messages = db.find_messages(
            recipient_id, unread_only=unread_only, offset=skip, limit=limit, conn=conn
        )

        db.touch_identity(recipient_id, now=now, conn=conn)

        deleted_count = db.delete_messages([m["mid"] for m in messages], conn=conn)

        unread_count = None
        if not unread_only:
            unread_count = db.count_messages(recipient_id, unread_only=True, conn=conn)

    if deleted_count < len(messages):
        overlap = len(messages) - deleted_count
        metrics.increment("receive_overlap", overlap)
        logger.warning(
            f"Receive for {recipient_id} returned {overlap} message(s) already consumed "
            "by a concurrent receive"
        )

    metrics.increment("messages_delivered", len(messages))
    logger.info(f"Retrieved and deleted {deleted_count} messages for user {recipient_id}")

    remaining = max(total_before - len(messages), 0)
    result: dict[str, Any] = {
        "messages": [
            {
                "id": m["mid"],
                "sender_id": m["sender_id"],
                "recipient_id": m["recipient_id"],
                "content": m["content"],
                "timestamp": m["created_at"],
                "is_read": m["is_read"],
            }
            for m in messages
        ],
        "pagination": {
            "current_page": page,
            "total_pages": math.ceil(remaining / limit),
            "total_messages": remaining,
            "has_more": skip + len(messages) < total_before,
            "limit": limit,
        },
        "deleted_count": deleted_count,
    }
    if unread_count is not None:
        result["unread_count"] = unread_count
    return result


def mark_read(
    user_id: str,
    message_ids: list[str] | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Mark a user's messages read, optionally only the given ids.

    Already-read messages are not counted, so repeating the call is harmless.

    Raises:
        UserNotFound
    """
    with db.store_operation("mark_read"):
        if not db.identity_exists(user_id, conn=conn):
            raise UserNotFound()
        updated = db.mark_messages_read(user_id, message_ids or None, conn=conn)

    logger.info(f"Marked {updated} messages as read for user {user_id}")
    return {"updated_count": updated}


def get_stats(user_id: str, conn: sqlite3.Connection | None = None) -> dict:
    """Inbox statistics for an identity.

    Raises:
        UserNotFound
    """
    with db.store_operation("stats"):
        identity = db.get_identity(user_id, conn=conn)
        if identity is None:
            raise UserNotFound()
        total = db.count_messages(user_id, conn=conn)
        unread = db.count_messages(user_id, unread_only=True, conn=conn)

    return {
        "user_id": user_id,
        "created_at": identity["created_at"],
        "last_active_at": identity["last_active_at"],
        "marked_for_deletion": identity["marked_for_deletion"],
        "total_messages": total,
        "unread_messages": unread,
        "read_messages": total - unread,
    }
