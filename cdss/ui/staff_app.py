from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from cdss.services import admin, assessments, clinician_settings, notifications
from cdss.services.errors import not_found
from cdss.tools.heuristic import calculate_temporal_diagnosis
from cdss.ui import patient_app

logger = logging.getLogger(__name__)

_STAFF_CTX: Optional[dict] = None


def configure() -> None:
    global _STAFF_CTX
    _STAFF_CTX = None


def _get_staff_sidebar_data(user_id: str) -> dict:
    user = patient_app.get_store().get_user(user_id)
    name = user.full_name if user else "Staff"
    role = (user.role if user else "CLINICIAN").title()
    return {
        "user_id": user_id,
        "display_name": name if role != "Clinician" else f"Dr. {name}",
        "role": role,
        "avatar": (user.avatar if user and user.avatar else patient_app._avatar_data_uri(name)),
    }


def _session_row(store, s) -> Dict[str, Any]:
    patient = store.get_user(s.patient_id)
    analysis = s.ai_analysis or {}
    return {
        "id": s.id,
        "patientId": s.patient_id,
        "patientName": patient.full_name if patient else "Unknown Patient",
        "region": s.body_region or "General",
        "status": s.status,
        "riskLevel": analysis.get("riskLevel") or "Low",
        "temporalDiagnosis": analysis.get("temporalDiagnosis"),
        "confidence": analysis.get("confidenceScore"),
        "date": patient_app._format_short_date(s.created_at),
        "locked": s.is_locked,
    }


def get_clinician_data(user_id: str) -> Dict[str, Any]:
    store = patient_app.get_store()
    user = store.get_user(user_id)
    if user is None:
        raise not_found("User")
    assigned, _ = store.list_sessions(clinician_id=user_id, limit=100)
    pending = assessments.new_case_queue(store)
    return {
        "assigned": [_session_row(store, s) for s in assigned if s.status != "archived"],
        "pending": [
            {
                "id": p["id"],
                "patientName": p["patientName"],
                "region": p.get("body_region") or "General",
                "riskLevel": p["riskLevel"],
                "date": patient_app._format_short_date(p.get("created_at")),
            }
            for p in pending
        ],
        "patients": [p.to_dict() for p in store.list_patients_for_clinician(user_id)],
        "appointments": [a.to_dict() for a in store.list_appointments(clinician_id=user_id)],
        "notifications": notifications.list_for_user(store, user, limit=10),
        "unread": notifications.unread_count(store, user),
    }


def get_case_detail(session_id: str) -> Dict[str, Any]:
    store = patient_app.get_store()
    session = store.get_session(session_id)
    if session is None:
        raise not_found("Session")
    patient = store.get_user(session.patient_id)
    temporal = session.temporal_diagnosis
    if temporal is None and session.symptoms:
        temporal = calculate_temporal_diagnosis(session.symptoms)
    return {
        "session": session.to_dict(),
        "row": _session_row(store, session),
        "patient": patient.to_dict() if patient else None,
        "analysis": session.ai_analysis or {},
        "symptomData": session.symptom_data,
        "redFlags": (session.ai_analysis or {}).get("redFlags") or [],
        "temporal": temporal,
        "guidedState": session.guided_test_state,
        "guidedResults": session.guided_test_results,
        "documents": [d.to_dict() for d in store.list_case_files(session.patient_id)],
        "plan": (lambda p: p.to_dict() if p else None)(store.get_active_treatment_plan(session.patient_id)),
    }


def get_clinician_settings(user_id: str) -> Dict[str, Any]:
    user = patient_app.get_store().get_user(user_id)
    if user is None:
        raise not_found("User")
    data = clinician_settings.get_settings(user)
    data.update(clinician_settings.security_overview(user))
    return data


def get_admin_data() -> Dict[str, Any]:
    store = patient_app.get_store()
    counts = admin.system_counts(store)
    return {
        "counts": counts,
        "queue": assessments.new_case_queue(store),
        "clinicians": [c.to_dict() for c in store.list_users(role="CLINICIAN") if c.is_active],
        "broadcasts": [n.to_dict() for n in store.list_broadcasts(limit=10)],
    }


def get_users_data(role: Optional[str] = None) -> List[Dict[str, Any]]:
    store = patient_app.get_store()
    role = None if role in (None, "", "ALL") else role
    return [u.to_dict() for u in store.list_users(role=role)]


def get_modules_data(region: Optional[str] = None, status: Optional[str] = None) -> Dict[str, Any]:
    store = patient_app.get_store()
    return {"modules": admin.list_modules(store, region=region, status=status), "region": region or "ALL", "status": status or "ALL"}


def get_staff_ctx() -> dict:
    global _STAFF_CTX
    if _STAFF_CTX is None:
        ctx = dict(patient_app.get_patient_ctx())
        ctx.update(
            {
                "get_staff_sidebar_data": _get_staff_sidebar_data,
                "get_clinician_data": get_clinician_data,
                "get_case_detail": get_case_detail,
                "get_clinician_settings": get_clinician_settings,
                "get_admin_data": get_admin_data,
                "get_users_data": get_users_data,
                "get_modules_data": get_modules_data,
            }
        )
        _STAFF_CTX = ctx
    return _STAFF_CTX
