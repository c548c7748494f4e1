from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from cdss.services import notifications
from cdss.services.errors import ServiceError, not_found
from cdss.store.schemas import MODULE_REGIONS, MODULE_STATUSES, ROLES, DiagnosticModule, User
from cdss.store.sqlite_store import SQLiteStore
from cdss.utils.time_utils import now_iso

logger = logging.getLogger(__name__)


SELF_CHANGE_ERROR = "Admins cannot modify their own role or status"


def change_role(store: SQLiteStore, user_id: str, role: Any, acting_admin_id: str) -> User:
    if user_id == acting_admin_id:
        raise ServiceError(SELF_CHANGE_ERROR, 403)
    role = str(role or "").strip().upper()
    if role not in ROLES:
        raise ServiceError("Invalid role provided", 400)
    user = store.get_user(user_id)
    if user is None:
        raise not_found("User")

    user.role = role
    user.updated_at = now_iso()
    store.update_user(user)

    if role == "CLINICIAN":
        notifications.notify_user(
            store,
            user.id,
            "Role Upgraded",
            "Your account has been upgraded to Clinician (Therapist). You can now manage patient cases.",
            link="/clinician/dashboard",
        )
    elif role == "PATIENT":
        notifications.notify_user(
            store,
            user.id,
            "Account Role Updated",
            "Your account role has been set to Patient. You can continue using the platform for assessments.",
            link="/patient/dashboard",
        )
    logger.info("role changed user=%s role=%s", user.id, role)
    return user


def set_active(store: SQLiteStore, user_id: str, is_active: Any, acting_admin_id: str) -> User:
    if user_id == acting_admin_id:
        raise ServiceError(SELF_CHANGE_ERROR, 403)
    if not isinstance(is_active, bool):
        raise ServiceError("isActive must be a boolean", 400)
    user = store.get_user(user_id)
    if user is None:
        raise not_found("User")
    user.is_active = is_active
    user.updated_at = now_iso()
    store.update_user(user)
    return user


def system_counts(store: SQLiteStore) -> Dict[str, Any]:
    return {"users": store.count_users_by_role(), "sessions": store.count_sessions_by_status()}


# diagnostic modules


def _clean_region(region: Any) -> str:
    value = str(region or "").strip().capitalize()
    if value not in MODULE_REGIONS:
        raise ServiceError("Invalid region", 400)
    return value


def _clean_status(status: Any, default: str = "Draft") -> str:
    value = str(status or default).strip().capitalize()
    if value not in MODULE_STATUSES:
        raise ServiceError("Invalid status", 400)
    return value


def _clean_questions(questions: Any) -> List[Dict[str, Any]]:
    if questions is None:
        return []
    if not isinstance(questions, list) or not all(isinstance(q, dict) for q in questions):
        raise ServiceError("questions must be a list of objects", 400)
    for idx, q in enumerate(questions):
        if not q.get("id"):
            raise ServiceError(f"Question at index {idx} is missing an id", 400)
    return questions


def list_modules(store: SQLiteStore, region: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
    region = None if region in (None, "", "ALL") else region
    status = None if status in (None, "", "ALL") else status
    out = []
    for m in store.list_modules(region=region, status=status):
        item = m.to_dict()
        item["questionCount"] = len(m.questions or [])
        out.append(item)
    return out


def create_module(store: SQLiteStore, admin: User, payload: Dict[str, Any]) -> DiagnosticModule:
    title = str(payload.get("title") or "").strip()
    if not title or not payload.get("region"):
        raise ServiceError("Title and region are required", 400)
    now = now_iso()
    module = DiagnosticModule(
        id=uuid.uuid4().hex,
        title=title,
        region=_clean_region(payload.get("region")),
        description=str(payload.get("description") or ""),
        status=_clean_status(payload.get("status")),
        questions=_clean_questions(payload.get("questions")),
        created_by=admin.id,
        updated_by=admin.id,
        created_at=now,
        updated_at=now,
    )
    store.save_module(module)
    logger.info("module created id=%s region=%s", module.id, module.region)
    return module


def update_module(store: SQLiteStore, admin: User, module_id: str, payload: Dict[str, Any]) -> DiagnosticModule:
    module = store.get_module(module_id)
    if module is None:
        raise not_found("Module")
    if payload.get("title"):
        module.title = str(payload["title"]).strip()
    if payload.get("description") is not None:
        module.description = str(payload["description"])
    if payload.get("region"):
        module.region = _clean_region(payload["region"])
    if payload.get("status"):
        module.status = _clean_status(payload["status"])
    if payload.get("questions"):
        module.questions = _clean_questions(payload["questions"])
    module.updated_by = admin.id
    module.version = (module.version or 1) + 1
    module.updated_at = now_iso()
    store.save_module(module)
    return module


def delete_module(store: SQLiteStore, module_id: str) -> None:
    module = store.get_module(module_id)
    if module is None:
        raise not_found("Module")
    if module.is_default:
        raise ServiceError("Cannot delete default modules", 400)
    store.delete_module(module_id)


# admin notifications


def send_admin_notification(store: SQLiteStore, payload: Dict[str, Any]):
    title = str(payload.get("title") or "").strip()
    description = str(payload.get("description") or "").strip()
    user_id = payload.get("userId")
    target_role = payload.get("targetRole")
    if not title or not description or not (user_id or target_role):
        raise ServiceError("Missing required fields", 400)
    type_ = payload.get("type") or "SYSTEM"
    link = payload.get("link")
    if user_id:
        if store.get_user(str(user_id)) is None:
            raise not_found("User")
        return notifications.notify_user(store, str(user_id), title, description, type_=type_, link=link)
    try:
        return notifications.broadcast(store, str(target_role), title, description, type_=type_, link=link)
    except ValueError as exc:
        raise ServiceError(str(exc), 400) from exc
