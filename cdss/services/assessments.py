from __future__ import annotations

import logging
import math
import smtplib
import uuid
from typing import Any, Dict, List, Optional

from cdss.agents import triage_agent
from cdss.auth import otp_service
from cdss.services import notifications
from cdss.services.errors import ServiceError, not_found
from cdss.store.schemas import SESSION_STATUSES, CaseFile, DiagnosisSession, PatientProfile, User
from cdss.store.sqlite_store import SQLiteStore
from cdss.tools.heuristic import calculate_temporal_diagnosis, validate_symptoms
from cdss.utils.time_utils import now_iso, utc_now

logger = logging.getLogger(__name__)

RISK_PRIORITY = {"Urgent": 3, "Moderate": 2, "Low": 1}
STAFF_ROLES = ("CLINICIAN", "ADMIN")
INTERNAL_SESSION_URL = "internal://assessment-session"


def biodata_snapshot(biodata: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not isinstance(biodata, dict) or not biodata:
        return None
    return {
        "fullName": biodata.get("fullName"),
        "sex": biodata.get("sex"),
        "ageRange": biodata.get("ageRange"),
        "occupation": biodata.get("occupation"),
        "education": biodata.get("education"),
        "notes": biodata.get("notes") or None,
        "confirmedAt": biodata.get("confirmedAt") or now_iso(),
    }


def case_file_id_for(user: User, suffix: str) -> str:
    return f"{user.first_name.lower()}_{user.last_name.lower()}-{suffix}"


def submit_assessment(store: SQLiteStore, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    body_region = payload.get("bodyRegion")
    symptom_data = payload.get("symptomData")
    if not body_region or not symptom_data:
        raise ServiceError("Missing required fields", 400)
    if not isinstance(symptom_data, list):
        raise ServiceError("symptomData must be a list", 400)
    if not isinstance(payload.get("redFlags") or [], list):
        raise ServiceError("redFlags must be a list", 400)

    user = store.get_user(user_id)
    if user is None:
        raise not_found("User")

    red_flags = payload.get("redFlags") or []
    analysis = payload.get("aiAnalysis")
    if not analysis:
        try:
            result = triage_agent.get_weighted_ai_analysis(
                body_region,
                symptom_data=symptom_data,
                red_flags=red_flags,
                condition_analysis=payload.get("conditionAnalysis"),
            )
        except triage_agent.AiAnalysisError as exc:
            raise ServiceError("AI analysis failed", 500) from exc
        analysis = result["analysis"]

    therapist = triage_agent.convert_to_therapist_facing_analysis(analysis, symptom_data, red_flags)
    therapist["isProvisional"] = True

    now = now_iso()
    session = DiagnosisSession(
        id=uuid.uuid4().hex,
        patient_id=user.id,
        status="pending_review",
        body_region=str(body_region),
        symptom_data=list(symptom_data),
        media_urls=[str(u) for u in (payload.get("mediaUrls") or [])],
        biodata=biodata_snapshot(payload.get("biodata")),
        ai_analysis=therapist,
        patient_facing_analysis=triage_agent.build_patient_facing_analysis(therapist),
        created_at=now,
        updated_at=now,
    )
    store.save_session(session)

    case_file_id = case_file_id_for(user, session.id[-6:])
    store.add_case_file(
        CaseFile(
            id=uuid.uuid4().hex,
            patient_id=user.id,
            case_file_id=case_file_id,
            file_name=f"{body_region} Assessment - {utc_now().strftime('%m/%d/%Y')}",
            file_url=INTERNAL_SESSION_URL,
            session_id=session.id,
            file_type="application/json",
            category="Other",
            created_at=now,
        )
    )

    risk = therapist["riskLevel"]
    notifications.notify_clinicians(
        store,
        "New Assessment Submitted",
        f"{user.full_name} submitted a {body_region} assessment ({risk} risk).",
        link=f"/clinician/cases/{session.id}",
    )
    if risk == "Urgent":
        notifications.notify_admins(
            store,
            "Urgent Case Pending Review",
            f"An urgent {body_region} assessment from {user.full_name} needs assignment.",
            link="/admin/dashboard",
        )

    logger.info("assessment submitted session=%s region=%s risk=%s", session.id, body_region, risk)
    return {"success": True, "sessionId": session.id, "aiAnalysis": therapist, "caseFileId": case_file_id}


def create_heuristic_session(store: SQLiteStore, payload: Dict[str, Any]) -> DiagnosisSession:
    patient_id = payload.get("patientId")
    symptoms = payload.get("symptoms")
    if not patient_id or not isinstance(symptoms, list):
        raise ServiceError("patientId and symptoms array are required", 400)
    check = validate_symptoms(symptoms)
    if not check["valid"]:
        raise ServiceError("; ".join(check["errors"]), 400)

    now = now_iso()
    session = DiagnosisSession(
        id=uuid.uuid4().hex,
        patient_id=str(patient_id),
        status="completed",
        symptoms=symptoms,
        affected_regions=list(payload.get("affectedRegions") or []),
        temporal_diagnosis=calculate_temporal_diagnosis(symptoms),
        completed_at=now,
        created_at=now,
        updated_at=now,
    )
    store.save_session(session)
    return session


def list_sessions_page(
    store: SQLiteStore,
    patient_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: Any = 20,
    page: Any = 1,
) -> Dict[str, Any]:
    try:
        limit = int(limit or 20)
    except (TypeError, ValueError):
        limit = 20
    try:
        page = int(page or 1)
    except (TypeError, ValueError):
        page = 1
    limit = max(1, min(100, limit))
    page = max(1, page)
    rows, total = store.list_sessions(patient_id=patient_id, status=status, limit=limit, page=page)
    return {
        "success": True,
        "data": [s.to_dict() for s in rows],
        "pagination": {"total": total, "page": page, "limit": limit, "pages": math.ceil(total / limit)},
    }


def can_view_session(session: DiagnosisSession, claims: Dict[str, Any]) -> bool:
    if claims.get("role") in STAFF_ROLES:
        return True
    return session.patient_id == claims.get("id")


def update_session(store: SQLiteStore, session_id: str, payload: Dict[str, Any], reviewer: User) -> DiagnosisSession:
    session = store.get_session(session_id)
    if session is None:
        raise not_found("Session")

    status = payload.get("status")
    if status is not None:
        if status not in SESSION_STATUSES:
            raise ServiceError("Invalid status", 400)
        session.status = status
    if payload.get("finalDiagnosis") is not None:
        session.final_diagnosis = payload["finalDiagnosis"]

    review = payload.get("clinicianReview")
    reviewed = False
    if isinstance(review, dict):
        review = dict(review)
        if review.get("confirmedDiagnosis"):
            now = now_iso()
            review.setdefault("reviewedBy", reviewer.id)
            review["reviewedAt"] = now
            session.status = "reviewed"
            session.reviewed_at = now
            reviewed = True
        session.clinician_review = review

    session.updated_at = now_iso()
    store.save_session(session)

    if reviewed:
        notifications.notify_user(
            store,
            session.patient_id,
            "Assessment Reviewed",
            f"Dr. {reviewer.last_name} has reviewed your {session.body_region or 'recent'} assessment.",
            type_="Assessments",
            link="/patient/dashboard",
        )
    return session


def archive_session(store: SQLiteStore, session_id: str) -> None:
    session = store.get_session(session_id)
    if session is None:
        raise not_found("Session")
    session.status = "archived"
    session.updated_at = now_iso()
    store.save_session(session)


def new_case_queue(store: SQLiteStore) -> List[Dict[str, Any]]:
    rows, _ = store.list_sessions(status="pending_review", limit=500)

    def _key(s: DiagnosisSession):
        risk = (s.ai_analysis or {}).get("riskLevel")
        return (-RISK_PRIORITY.get(risk, 0), s.created_at)

    out: List[Dict[str, Any]] = []
    for s in sorted(rows, key=_key):
        patient = store.get_user(s.patient_id)
        item = s.to_dict()
        item["patientName"] = patient.full_name if patient else "Unknown Patient"
        item["riskLevel"] = (s.ai_analysis or {}).get("riskLevel") or "Low"
        out.append(item)
    return out


def _send_assignment_email(to: str, subject: str, text: str) -> None:
    try:
        otp_service.get_mailer().send(to, subject, text)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("assignment email failed to=%s: %s", to, exc)


def assign_case(store: SQLiteStore, session_id: str, clinician_id: str) -> DiagnosisSession:
    if not clinician_id:
        raise ServiceError("clinicianId is required", 400)
    session = store.get_session(session_id)
    if session is None:
        raise not_found("Session")
    clinician = store.get_user(clinician_id)
    patient = store.get_user(session.patient_id)
    if clinician is None or patient is None:
        raise ServiceError("Clinician or Patient not found", 404)
    if clinician.role != "CLINICIAN":
        raise ServiceError("Assignee must be a clinician", 400)

    now = now_iso()
    session.clinician_id = clinician.id
    session.status = "assigned"
    session.updated_at = now
    store.save_session(session)
    store.upsert_patient_profile(PatientProfile(user_id=patient.id, assigned_clinician_id=clinician.id, updated_at=now))

    notifications.notify_user(
        store,
        clinician.id,
        "New Case Assigned",
        "A new patient case has been assigned to you. Please review the details.",
        link=f"/clinician/cases/{session.id}",
    )
    notifications.notify_user(
        store,
        patient.id,
        "Clinician Assigned",
        "A clinician has been assigned to review your assessment. You can now start communicating.",
        link="/patient/messages",
    )
    _send_assignment_email(
        clinician.email,
        "New Case Assigned",
        f"Dr. {clinician.last_name}, the case of {patient.full_name} has been assigned to you.",
    )
    _send_assignment_email(
        patient.email,
        "Your Clinician Has Been Assigned",
        f"Hello {patient.first_name}, Dr. {clinician.last_name} will review your assessment.",
    )
    logger.info("case assigned session=%s clinician=%s", session.id, clinician.id)
    return session
