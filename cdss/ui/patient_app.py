from __future__ import annotations

import base64
import logging
import threading
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from cdss import config
from cdss.services import assessments, care, notifications
from cdss.services.errors import ServiceError, not_found
from cdss.store.sqlite_store import SQLiteStore
from cdss.tools import assessment_engine as engine
from cdss.tools.region_rules import BODY_REGIONS, rules_for_region

logger = logging.getLogger(__name__)

_DB_PATH = config.DB_PATH
_ICONS: dict = {}
_BACKEND_CACHE: dict = {"store": None}
_PATIENT_CTX: Optional[dict] = None

# user id -> {"region": str, "engine": dict, "startedAt": float}
_WIZARD: Dict[str, dict] = {}
_WIZARD_LOCK = threading.Lock()


def configure(*, db_path: str, icons: Optional[dict] = None) -> None:
    global _DB_PATH, _ICONS, _BACKEND_CACHE, _PATIENT_CTX
    _DB_PATH = db_path or _DB_PATH
    _ICONS = icons or {}
    _BACKEND_CACHE = {"store": None}
    _PATIENT_CTX = None
    with _WIZARD_LOCK:
        _WIZARD.clear()


def get_store() -> SQLiteStore:
    store = _BACKEND_CACHE.get("store")
    if store is not None:
        return store
    start = time.perf_counter()
    store = SQLiteStore(_DB_PATH)
    store.init_db()
    logger.debug("init SQLiteStore %s in %.1fms", _DB_PATH, (time.perf_counter() - start) * 1000)
    _BACKEND_CACHE["store"] = store
    return store


def _avatar_data_uri(name: str) -> str:
    initial = (name or "P").strip()[:1].upper() or "P"
    svg = f"""<svg xmlns='http://www.w3.org/2000/svg' width='96' height='96'>
      <circle cx='48' cy='48' r='48' fill='#6AB8C4'/>
      <text x='50%' y='54%' text-anchor='middle' font-size='40' font-family='Segoe UI, Arial' fill='#052659' dy='.1em'>{initial}</text>
    </svg>"""
    b64 = base64.b64encode(svg.encode("utf-8")).decode("utf-8")
    return f"data:image/svg+xml;base64,{b64}"


def _format_short_date(ts: Optional[str]) -> str:
    if not ts:
        return ""
    try:
        return datetime.fromisoformat(str(ts)).strftime("%d %b %Y")
    except ValueError:
        return str(ts)[:10]


# assessment wizard


def _wizard_view(entry: Optional[dict]) -> Dict[str, Any]:
    if not entry:
        return {"active": False, "regions": BODY_REGIONS}
    state = entry["engine"]
    current = engine.get_current_question(state)
    total = sum(len(c.get("questions") or []) for c in state["conditions"])
    return {
        "active": True,
        "region": entry["region"],
        "title": state.get("title"),
        "currentQuestion": current,
        "answeredCount": len(state["askedQuestions"]),
        "totalQuestions": total,
        "redFlags": list(state["redFlags"]),
        "isComplete": bool(state["isComplete"]) or current is None,
        "completionReason": state.get("completionReason"),
        "canGoBack": bool(state["askedQuestions"]),
    }


def get_wizard(user_id: str) -> Dict[str, Any]:
    with _WIZARD_LOCK:
        return _wizard_view(_WIZARD.get(user_id))


def start_wizard(user_id: str, region: Any) -> Dict[str, Any]:
    region = str(region or "").strip()
    if not region:
        raise ServiceError("region is required", 400)
    rules = rules_for_region(get_store(), region)
    if rules is None:
        raise ServiceError(f"No assessment rules found for region: {region}", 404)
    try:
        state = engine.initialize_engine(rules)
    except ValueError as exc:
        raise ServiceError(str(exc), 400) from exc
    entry = {"region": region[:1].upper() + region[1:].lower(), "engine": state, "startedAt": time.time()}
    with _WIZARD_LOCK:
        _WIZARD[user_id] = entry
        view = _wizard_view(entry)
    logger.info("wizard started user=%s region=%s", user_id, entry["region"])
    return view


def _entry_or_400(user_id: str) -> dict:
    entry = _WIZARD.get(user_id)
    if entry is None:
        raise ServiceError("No assessment in progress", 400)
    return entry


def answer_wizard(user_id: str, question_id: Any, answer: Any) -> Dict[str, Any]:
    if not question_id or answer in (None, ""):
        raise ServiceError("questionId and answer are required", 400)
    with _WIZARD_LOCK:
        entry = _entry_or_400(user_id)
        entry["engine"] = engine.process_answer(entry["engine"], str(question_id), str(answer))
        return _wizard_view(entry)


def back_wizard(user_id: str) -> Dict[str, Any]:
    with _WIZARD_LOCK:
        entry = _entry_or_400(user_id)
        entry["engine"] = engine.previous_question(entry["engine"])
        return _wizard_view(entry)


def reset_wizard(user_id: str) -> None:
    with _WIZARD_LOCK:
        _WIZARD.pop(user_id, None)


def finish_wizard(user_id: str, biodata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    with _WIZARD_LOCK:
        entry = _entry_or_400(user_id)
        if not entry["engine"]["askedQuestions"]:
            raise ServiceError("Answer at least one question before finishing", 400)
        prepared = engine.prepare_for_ai_analysis(entry["engine"], biodata)
        region = entry["region"]

    result = assessments.submit_assessment(
        get_store(),
        user_id,
        {
            "bodyRegion": region,
            "symptomData": prepared["symptomData"],
            "redFlags": prepared["redFlags"],
            "conditionAnalysis": prepared["conditionAnalysis"],
            "biodata": biodata,
        },
    )
    reset_wizard(user_id)
    return result


# dashboard data


def _get_patient_sidebar_data(user_id: str) -> dict:
    user = get_store().get_user(user_id)
    name = user.full_name if user else "Patient"
    return {
        "user_id": user_id,
        "display_name": name,
        "role": "Patient",
        "avatar": (user.avatar if user and user.avatar else _avatar_data_uri(name)),
    }


def _assigned_clinician(user_id: str):
    store = get_store()
    profile = store.get_patient_profile(user_id)
    if profile is None or not profile.assigned_clinician_id:
        return None
    return store.get_user(profile.assigned_clinician_id)


def get_patient_data(user_id: str) -> Dict[str, Any]:
    store = get_store()
    user = store.get_user(user_id)
    if user is None:
        raise not_found("User")

    rows, _ = store.list_sessions(patient_id=user_id, limit=20)
    sessions: List[Dict[str, Any]] = []
    for s in rows:
        if s.status == "archived":
            continue
        sessions.append(
            {
                "id": s.id,
                "region": s.body_region or ", ".join(s.affected_regions) or "General",
                "status": s.status,
                "date": _format_short_date(s.created_at),
                "analysis": s.patient_facing_analysis,
                "finalDiagnosis": (s.clinician_review or {}).get("confirmedDiagnosis"),
                "temporal": s.temporal_diagnosis,
            }
        )

    plan = store.get_active_treatment_plan(user_id)
    clinician = _assigned_clinician(user_id)
    return {
        "user": user.to_dict(),
        "sessions": sessions,
        "appointments": [a.to_dict() for a in store.list_appointments(patient_id=user_id)],
        "plan": plan.to_dict() if plan else None,
        "notifications": notifications.list_for_user(store, user, limit=10),
        "unread": notifications.unread_count(store, user),
        "clinician": clinician.to_dict() if clinician else None,
    }


def get_documents_data(user_id: str) -> Dict[str, Any]:
    store = get_store()
    return {
        "documents": [d.to_dict() for d in store.list_case_files(user_id)],
        "sessions": [{"id": s.id, "region": s.body_region} for s in store.list_sessions(patient_id=user_id, limit=50)[0]],
    }


def get_messages_data(user_id: str) -> Dict[str, Any]:
    store = get_store()
    clinician = _assigned_clinician(user_id)
    if clinician is None:
        return {"clinician": None, "messages": []}
    user = store.get_user(user_id)
    messages = care.read_conversation(store, user, clinician.id)
    return {"clinician": clinician.to_dict(), "messages": [m.to_dict() for m in messages]}


def _build_patient_ctx() -> dict:
    return {
        "icons": _ICONS,
        "get_patient_sidebar_data": _get_patient_sidebar_data,
        "get_patient_data": get_patient_data,
        "get_documents_data": get_documents_data,
        "get_messages_data": get_messages_data,
        "get_wizard": get_wizard,
        "format_short_date": _format_short_date,
    }


def get_patient_ctx() -> dict:
    global _PATIENT_CTX
    if _PATIENT_CTX is None:
        _PATIENT_CTX = _build_patient_ctx()
    return _PATIENT_CTX
