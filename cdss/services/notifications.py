from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from cdss.store.schemas import NOTIFICATION_TARGETS, NOTIFICATION_TYPES, Notification, User
from cdss.store.sqlite_store import SQLiteStore
from cdss.utils.time_utils import now_iso

logger = logging.getLogger(__name__)


def _clean_type(type_: Optional[str]) -> str:
    return type_ if type_ in NOTIFICATION_TYPES else "SYSTEM"


def notify_user(
    store: SQLiteStore,
    user_id: str,
    title: str,
    description: str,
    type_: str = "SYSTEM",
    link: Optional[str] = None,
) -> Notification:
    note = Notification(
        id=uuid.uuid4().hex,
        title=title,
        description=description,
        user_id=user_id,
        type=_clean_type(type_),
        link=link,
        created_at=now_iso(),
    )
    store.add_notification(note)
    logger.info("notification user=%s type=%s title=%s", user_id, note.type, title)
    return note


def broadcast(
    store: SQLiteStore,
    target_role: str,
    title: str,
    description: str,
    type_: str = "SYSTEM",
    link: Optional[str] = None,
) -> Notification:
    target = (target_role or "").strip().upper()
    if target not in NOTIFICATION_TARGETS:
        raise ValueError(f"Invalid target role: {target_role}")
    note = Notification(
        id=uuid.uuid4().hex,
        title=title,
        description=description,
        target_role=target,
        type=_clean_type(type_),
        link=link,
        created_at=now_iso(),
    )
    store.add_notification(note)
    logger.info("broadcast target=%s type=%s title=%s", target, note.type, title)
    return note


def is_read_by(note: Notification, user_id: str) -> bool:
    if note.is_broadcast:
        return user_id in (note.read_by or [])
    return note.status == "Read"


def list_for_user(store: SQLiteStore, user: User, limit: int = 100) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for note in store.list_notifications_for(user.id, user.role, limit=limit):
        item = note.to_dict()
        item.pop("read_by", None)
        item["isRead"] = is_read_by(note, user.id)
        item["isBroadcast"] = note.is_broadcast
        out.append(item)
    return out


def unread_count(store: SQLiteStore, user: User) -> int:
    return sum(1 for n in list_for_user(store, user) if not n["isRead"])


def mark_read(store: SQLiteStore, notification_id: str, user: User) -> Optional[Notification]:
    """Return None when the notification does not exist."""
    note = store.get_notification(notification_id)
    if note is None:
        return None
    if note.is_broadcast:
        if note.target_role not in ("ALL", user.role):
            raise PermissionError("Notification is not addressed to this user")
        if user.id not in note.read_by:
            note.read_by = list(note.read_by) + [user.id]
    else:
        if note.user_id != user.id:
            raise PermissionError("Notification belongs to another user")
        note.status = "Read"
    store.update_notification_read_state(note)
    return note


def notify_clinicians(store: SQLiteStore, title: str, description: str, type_: str = "Assessments", link: Optional[str] = None) -> Notification:
    return broadcast(store, "CLINICIAN", title, description, type_=type_, link=link)


def notify_admins(store: SQLiteStore, title: str, description: str, type_: str = "ALERT", link: Optional[str] = None) -> Notification:
    return broadcast(store, "ADMIN", title, description, type_=type_, link=link)
