from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, List

from cdss.services import notifications
from cdss.services.errors import ServiceError, not_found, unauthorized
from cdss.store.schemas import (
    APPOINTMENT_STATUSES,
    CASE_FILE_CATEGORIES,
    Appointment,
    CaseFile,
    Message,
    TreatmentPlan,
    User,
    conversation_id_for,
)
from cdss.store.sqlite_store import SQLiteStore
from cdss.utils.time_utils import now_iso

logger = logging.getLogger(__name__)


def _patient_or_404(store: SQLiteStore, patient_id: Any) -> User:
    patient = store.get_user(str(patient_id)) if patient_id else None
    if patient is None:
        raise not_found("Patient")
    return patient


# appointments


def create_appointment(store: SQLiteStore, clinician: User, payload: Dict[str, Any]) -> Appointment:
    patient_id = payload.get("patientId")
    day = payload.get("date")
    at = payload.get("time")
    if not patient_id or not day or not at:
        raise ServiceError("Missing required fields", 400)
    patient = _patient_or_404(store, patient_id)

    appointment = Appointment(
        id=uuid.uuid4().hex,
        patient_id=patient.id,
        clinician_id=clinician.id,
        clinician_name=clinician.full_name,
        date=f"{day}T{at}",
        type=payload.get("type") or "General Consultation",
        location=payload.get("location") or "Virtual Session",
        created_at=now_iso(),
    )
    store.save_appointment(appointment)
    notifications.notify_user(
        store,
        patient.id,
        "Appointment Scheduled",
        f"Dr. {clinician.last_name} scheduled a {appointment.type} on {day} at {at}.",
        type_="Appointments",
        link="/patient/dashboard",
    )
    return appointment


def update_appointment(store: SQLiteStore, clinician: User, appointment_id: str, payload: Dict[str, Any]) -> Appointment:
    appointment = store.get_appointment(appointment_id)
    if appointment is None:
        raise not_found("Appointment")
    if appointment.clinician_id != clinician.id:
        raise unauthorized()

    status = payload.get("status")
    if status:
        if status not in APPOINTMENT_STATUSES:
            raise ServiceError("Invalid status", 400)
        appointment.status = status
    for key in ("type", "location"):
        if payload.get(key):
            setattr(appointment, key, payload[key])
    store.save_appointment(appointment)

    if status == "Cancelled":
        notifications.notify_user(
            store,
            appointment.patient_id,
            "Appointment Cancelled",
            f"Your appointment with Dr. {appointment.clinician_name} on {appointment.date[:10]} has been cancelled.",
            type_="Appointments",
            link="/patient/dashboard",
        )
    return appointment


def delete_appointment(store: SQLiteStore, clinician: User, appointment_id: str) -> None:
    appointment = store.get_appointment(appointment_id)
    if appointment is None:
        raise not_found("Appointment")
    if appointment.clinician_id != clinician.id:
        raise unauthorized()
    store.delete_appointment(appointment_id)


def list_appointments_for(store: SQLiteStore, user: User) -> List[Appointment]:
    if user.role == "CLINICIAN":
        return store.list_appointments(clinician_id=user.id)
    if user.role == "PATIENT":
        return store.list_appointments(patient_id=user.id)
    return store.list_appointments()


# treatment plans


def _activity_from(payload: Dict[str, Any]) -> Dict[str, Any]:
    day = payload.get("date")
    at = payload.get("time")
    return {
        "date": f"{day}T{at}" if day and at else now_iso(),
        "goal": payload.get("goal"),
        "activeTreatment": payload.get("activeTreatment"),
        "homeExercise": payload.get("homeExercise"),
    }


def add_treatment_activity(store: SQLiteStore, clinician: User, payload: Dict[str, Any]) -> TreatmentPlan:
    patient_id = payload.get("patientId")
    condition_name = payload.get("conditionName")
    activity = payload.get("activity")
    if not patient_id or not condition_name or not isinstance(activity, dict) or not activity:
        raise ServiceError("Missing required fields", 400)
    patient = _patient_or_404(store, patient_id)

    now = now_iso()
    plan = store.get_active_treatment_plan(patient.id)
    if plan is not None:
        plan.activities = list(plan.activities) + [_activity_from(activity)]
        plan.progress = min(100, (plan.progress or 0) + 5)
        plan.updated_at = now
    else:
        plan = TreatmentPlan(
            id=uuid.uuid4().hex,
            patient_id=patient.id,
            clinician_name=clinician.full_name,
            condition_name=str(condition_name),
            activities=[_activity_from(activity)],
            progress=5,
            status="active",
            created_at=now,
            updated_at=now,
        )
    store.save_treatment_plan(plan)

    notifications.notify_user(
        store,
        patient.id,
        "Treatment Plan Updated",
        f'Dr. {clinician.full_name} has updated your treatment plan: "{activity.get("goal") or condition_name}".',
        type_="Treatments",
        link="/patient/dashboard",
    )
    return plan


def send_referral(store: SQLiteStore, clinician: User, payload: Dict[str, Any]) -> Dict[str, Any]:
    patient_id = payload.get("patientId")
    specialty = payload.get("specialty")
    if not patient_id or not specialty:
        raise ServiceError("Missing required fields", 400)
    patient = _patient_or_404(store, patient_id)
    reason = payload.get("reason") or "Clinical follow-up"
    notifications.notify_user(
        store,
        patient.id,
        "New Referral Authorized",
        f"Dr. {clinician.full_name} has authorized a referral to a {specialty}. Reason: {reason}",
        type_="Assessments",
        link="/patient/dashboard",
    )
    logger.info("referral clinician=%s patient=%s specialty=%s", clinician.id, patient.id, specialty)
    return {"success": True, "message": "Referral sent successfully"}


# documents


def _target_patient_id(user: User, requested: Any) -> str:
    if user.role in ("CLINICIAN", "ADMIN"):
        target = str(requested or "").strip()
    else:
        target = user.id
    if not target or target in ("undefined", "null"):
        raise ServiceError("Valid Patient ID is required", 400)
    return target


def list_documents(store: SQLiteStore, user: User, patient_id: Any = None) -> List[CaseFile]:
    return store.list_case_files(_target_patient_id(user, patient_id))


def add_document(store: SQLiteStore, user: User, payload: Dict[str, Any]) -> CaseFile:
    if not payload.get("fileUrl") or not payload.get("fileName"):
        raise ServiceError("Missing required fields", 400)
    patient = _patient_or_404(store, _target_patient_id(user, payload.get("patientId")))
    category = payload.get("category") if payload.get("category") in CASE_FILE_CATEGORIES else "Other"
    try:
        size = int(payload["fileSize"]) if payload.get("fileSize") is not None else None
    except (TypeError, ValueError):
        size = None

    case_file = CaseFile(
        id=uuid.uuid4().hex,
        patient_id=patient.id,
        case_file_id=f"{patient.first_name.lower()}_{patient.last_name.lower()}-{int(time.time() * 1000)}",
        file_name=str(payload["fileName"]),
        file_url=str(payload["fileUrl"]),
        session_id=payload.get("sessionId"),
        file_type=payload.get("fileType"),
        file_size=size,
        category=category,
        created_at=now_iso(),
    )
    store.add_case_file(case_file)
    return case_file


def delete_document(store: SQLiteStore, user: User, file_id: str) -> None:
    doc = store.get_case_file(file_id)
    if doc is None:
        raise not_found("Document")
    if doc.patient_id != user.id and user.role != "CLINICIAN":
        raise unauthorized()
    store.delete_case_file(file_id)


# messages


def send_message(store: SQLiteStore, sender: User, payload: Dict[str, Any]) -> Message:
    receiver_id = str(payload.get("receiverId") or "").strip()
    content = str(payload.get("content") or "").strip()
    if not receiver_id or not content:
        raise ServiceError("receiverId and content are required", 400)
    receiver = store.get_user(receiver_id)
    if receiver is None:
        raise not_found("Receiver")

    message = Message(
        id=uuid.uuid4().hex,
        sender_id=sender.id,
        receiver_id=receiver.id,
        conversation_id=conversation_id_for(sender.id, receiver.id),
        content=content,
        created_at=now_iso(),
    )
    store.add_message(message)
    notifications.notify_user(
        store,
        receiver.id,
        "New Message",
        f"{sender.full_name} sent you a message.",
        type_="Messages",
        link="/clinician/dashboard" if receiver.role == "CLINICIAN" else "/patient/messages",
    )
    return message


def read_conversation(store: SQLiteStore, user: User, other_user_id: str) -> List[Message]:
    messages = store.list_conversation(conversation_id_for(user.id, other_user_id))
    store.mark_messages_read(other_user_id, user.id)
    return messages
