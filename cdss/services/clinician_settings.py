from __future__ import annotations

import copy
import logging
import re
from typing import Any, Dict, List

from cdss.auth import credentials
from cdss.services.errors import ServiceError
from cdss.store.schemas import User
from cdss.store.sqlite_store import SQLiteStore
from cdss.utils.time_utils import now_iso

logger = logging.getLogger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
PAIN_SCALES = ("VAS",)
TIME_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")

DEFAULT_SETTINGS: Dict[str, Any] = {
    "professional": {
        "licenseBody": "",
        "experienceYears": 0,
        "primaryPracticeArea": "",
        "verified": False,
    },
    "clinicalPreferences": {
        "defaultModules": [],
        "painScale": "VAS",
        "autoSuggestTests": True,
    },
    "availability": {
        "timezone": "UTC",
        "sessionBuffer": 15,
        "acceptNewPatients": True,
        "weeklySchedule": {day: {"enabled": day not in ("saturday", "sunday"), "timeSlots": []} for day in WEEKDAYS},
    },
    "notifications": {
        "email": True,
        "inApp": True,
        "events": [],
    },
}


def _section(user: User, name: str) -> Dict[str, Any]:
    merged = copy.deepcopy(DEFAULT_SETTINGS[name])
    merged.update((user.settings or {}).get(name) or {})
    return merged


def _save_section(store: SQLiteStore, user: User, name: str, values: Dict[str, Any]) -> Dict[str, Any]:
    settings = dict(user.settings or {})
    settings[name] = values
    user.settings = settings
    user.updated_at = now_iso()
    store.update_user(user)
    logger.info("clinician settings updated user=%s section=%s", user.id, name)
    return values


def _split_specializations(value: str | None) -> List[str]:
    return [s.strip() for s in str(value or "").split(",") if s.strip()]


def _required_text(payload: Dict[str, Any], key: str, label: str) -> str:
    value = str(payload.get(key) or "").strip()
    if not value:
        raise ServiceError(f"{label} is required", 400)
    return value


def _bool_field(payload: Dict[str, Any], key: str) -> bool:
    value = payload.get(key)
    if not isinstance(value, bool):
        raise ServiceError(f"{key} must be a boolean", 400)
    return value


def _string_list(payload: Dict[str, Any], key: str) -> List[str]:
    value = payload.get(key)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ServiceError(f"{key} must be a list of strings", 400)
    return [v.strip() for v in value if v.strip()]


def _non_negative(payload: Dict[str, Any], key: str, label: str) -> int:
    try:
        value = int(float(payload.get(key)))
    except (TypeError, ValueError, OverflowError):
        raise ServiceError(f"{label} must be a number", 400) from None
    if value < 0:
        raise ServiceError(f"{label} must be positive", 400)
    return value


def get_settings(user: User) -> Dict[str, Any]:
    professional = _section(user, "professional")
    professional["licenseNumber"] = user.license_number or ""
    professional["specializations"] = _split_specializations(user.specialization)
    return {
        "userId": user.id,
        "profile": {
            "firstName": user.first_name,
            "lastName": user.last_name,
            "phone": user.phone or "",
            "avatarUrl": user.avatar,
            "email": user.email,
            "role": user.role,
        },
        "professional": professional,
        "clinicalPreferences": _section(user, "clinicalPreferences"),
        "availability": _section(user, "availability"),
        "notifications": _section(user, "notifications"),
    }


def update_professional(store: SQLiteStore, user: User, payload: Dict[str, Any]) -> Dict[str, Any]:
    license_number = _required_text(payload, "licenseNumber", "License number")
    license_body = _required_text(payload, "licenseBody", "License issuing body")
    experience = _non_negative(payload, "experienceYears", "Experience years")
    specializations = _string_list(payload, "specializations")
    if not specializations:
        raise ServiceError("Select at least one specialization", 400)
    practice_area = _required_text(payload, "primaryPracticeArea", "Primary practice area")

    user.license_number = license_number
    user.specialization = ", ".join(specializations)
    values = _section(user, "professional")
    values.update(licenseBody=license_body, experienceYears=experience, primaryPracticeArea=practice_area)
    _save_section(store, user, "professional", values)
    return get_settings(user)["professional"]


def update_clinical_preferences(store: SQLiteStore, user: User, payload: Dict[str, Any]) -> Dict[str, Any]:
    pain_scale = str(payload.get("painScale") or "")
    if pain_scale not in PAIN_SCALES:
        raise ServiceError("Invalid pain scale", 400)
    values = {
        "defaultModules": _string_list(payload, "defaultModules"),
        "painScale": pain_scale,
        "autoSuggestTests": _bool_field(payload, "autoSuggestTests"),
    }
    return _save_section(store, user, "clinicalPreferences", values)


def _clean_schedule(schedule: Any) -> Dict[str, Any]:
    if not isinstance(schedule, dict):
        raise ServiceError("weeklySchedule is required", 400)
    cleaned: Dict[str, Any] = {}
    for day in WEEKDAYS:
        entry = schedule.get(day)
        if not isinstance(entry, dict):
            raise ServiceError(f"Schedule for {day} is required", 400)
        slots = entry.get("timeSlots") or []
        if not isinstance(slots, list):
            raise ServiceError(f"Invalid time slots for {day}", 400)
        clean_slots = []
        for slot in slots:
            start = str((slot or {}).get("start") or "")
            end = str((slot or {}).get("end") or "")
            if not TIME_RE.match(start) or not TIME_RE.match(end):
                raise ServiceError("Invalid time format", 400)
            clean_slots.append({"start": start, "end": end})
        cleaned[day] = {"enabled": _bool_field(entry, "enabled"), "timeSlots": clean_slots}
    return cleaned


def update_availability(store: SQLiteStore, user: User, payload: Dict[str, Any]) -> Dict[str, Any]:
    values = {
        "timezone": str(payload.get("timezone") or "UTC").strip() or "UTC",
        "sessionBuffer": _non_negative(payload, "sessionBuffer", "Session buffer"),
        "acceptNewPatients": _bool_field(payload, "acceptNewPatients"),
        "weeklySchedule": _clean_schedule(payload.get("weeklySchedule")),
    }
    return _save_section(store, user, "availability", values)


def update_notification_preferences(store: SQLiteStore, user: User, payload: Dict[str, Any]) -> Dict[str, Any]:
    values = {
        "email": _bool_field(payload, "email"),
        "inApp": _bool_field(payload, "inApp"),
        "events": _string_list(payload, "events"),
    }
    return _save_section(store, user, "notifications", values)


def security_overview(user: User) -> Dict[str, Any]:
    return {"lastLogin": user.last_login, "createdAt": user.created_at, "isVerified": user.is_verified}


def update_security(user: User, payload: Dict[str, Any]) -> Dict[str, Any]:
    if not payload.get("currentPassword") or not payload.get("newPassword"):
        raise ServiceError("Invalid request", 400)
    ok, message = credentials.change_password(
        user.id,
        str(payload.get("currentPassword")),
        str(payload.get("newPassword")),
        str(payload.get("confirmPassword") or ""),
    )
    if not ok:
        raise ServiceError(message, 400)
    return {"message": "Password updated successfully"}
