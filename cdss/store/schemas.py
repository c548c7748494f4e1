from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional

ROLES = ("PATIENT", "CLINICIAN", "ADMIN")
SESSION_STATUSES = ("in_progress", "completed", "pending_review", "assigned", "reviewed", "archived")
CASE_FILE_CATEGORIES = ("Lab Report", "Imaging", "Prescription", "Clinical Note", "Other")
NOTIFICATION_TARGETS = ("PATIENT", "CLINICIAN", "ADMIN", "ALL")
NOTIFICATION_TYPES = ("SYSTEM", "ALERT", "UPDATE", "Assessments", "Appointments", "Treatments", "Messages")
MODULE_REGIONS = ("Lumbar", "Cervical", "Shoulder", "Ankle", "Knee", "Elbow", "Hip", "Wrist", "General")
MODULE_STATUSES = ("Draft", "Review", "Active", "Archived")
APPOINTMENT_STATUSES = ("Scheduled", "Completed", "Cancelled")


def _row_get(row: Optional[Mapping[str, Any]], key: str, default: Any = None) -> Any:
    if row is None:
        return default
    if hasattr(row, "keys"):
        try:
            if key in row.keys():
                return row[key]
        except Exception:
            pass
    if isinstance(row, dict):
        return row.get(key, default)
    try:
        return row[key]
    except Exception:
        return default


def _json_get(row: Optional[Mapping[str, Any]], key: str, default: Any) -> Any:
    value = _row_get(row, key)
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    first_name: str
    last_name: str
    role: str = "PATIENT"
    is_active: bool = True
    is_verified: bool = False
    last_login: str | None = None
    specialization: str | None = None
    license_number: str | None = None
    date_of_birth: str | None = None
    gender: str | None = None
    phone: str | None = None
    avatar: str | None = None
    settings: Dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("password_hash", None)
        data["full_name"] = self.full_name
        return data

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "User":
        return cls(
            id=_row_get(row, "id", ""),
            email=_row_get(row, "email", ""),
            password_hash=_row_get(row, "password_hash", ""),
            first_name=_row_get(row, "first_name", ""),
            last_name=_row_get(row, "last_name", ""),
            role=_row_get(row, "role", "PATIENT"),
            is_active=bool(_row_get(row, "is_active", 1)),
            is_verified=bool(_row_get(row, "is_verified", 0)),
            last_login=_row_get(row, "last_login"),
            specialization=_row_get(row, "specialization"),
            license_number=_row_get(row, "license_number"),
            date_of_birth=_row_get(row, "date_of_birth"),
            gender=_row_get(row, "gender"),
            phone=_row_get(row, "phone"),
            avatar=_row_get(row, "avatar"),
            settings=_json_get(row, "settings", {}),
            created_at=_row_get(row, "created_at", ""),
            updated_at=_row_get(row, "updated_at"),
        )


@dataclass
class PatientProfile:
    user_id: str
    assigned_clinician_id: str | None
    updated_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PatientProfile":
        return cls(
            user_id=_row_get(row, "user_id", ""),
            assigned_clinician_id=_row_get(row, "assigned_clinician_id"),
            updated_at=_row_get(row, "updated_at", ""),
        )


@dataclass
class DiagnosisSession:
    id: str
    patient_id: str
    status: str = "in_progress"
    clinician_id: str | None = None
    body_region: str | None = None
    symptom_data: List[Dict[str, Any]] = field(default_factory=list)
    symptoms: List[Dict[str, Any]] = field(default_factory=list)
    affected_regions: List[str] = field(default_factory=list)
    media_urls: List[str] = field(default_factory=list)
    biodata: Dict[str, Any] | None = None
    ai_analysis: Dict[str, Any] | None = None
    patient_facing_analysis: Dict[str, Any] | None = None
    temporal_diagnosis: Dict[str, Any] | None = None
    clinician_review: Dict[str, Any] | None = None
    final_diagnosis: Dict[str, Any] | None = None
    guided_test_state: Dict[str, Any] | None = None
    guided_test_results: Dict[str, Any] | None = None
    reviewed_at: str | None = None
    completed_at: str | None = None
    created_at: str = ""
    updated_at: str | None = None

    @property
    def is_locked(self) -> bool:
        return bool((self.guided_test_results or {}).get("isLocked"))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # Engine state is internal to the guided-test routes
        data.pop("guided_test_state", None)
        return data

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DiagnosisSession":
        return cls(
            id=_row_get(row, "id", ""),
            patient_id=_row_get(row, "patient_id", ""),
            status=_row_get(row, "status", "in_progress"),
            clinician_id=_row_get(row, "clinician_id"),
            body_region=_row_get(row, "body_region"),
            symptom_data=_json_get(row, "symptom_data_json", []),
            symptoms=_json_get(row, "symptoms_json", []),
            affected_regions=_json_get(row, "affected_regions_json", []),
            media_urls=_json_get(row, "media_urls_json", []),
            biodata=_json_get(row, "biodata_json", None),
            ai_analysis=_json_get(row, "ai_analysis_json", None),
            patient_facing_analysis=_json_get(row, "patient_facing_analysis_json", None),
            temporal_diagnosis=_json_get(row, "temporal_diagnosis_json", None),
            clinician_review=_json_get(row, "clinician_review_json", None),
            final_diagnosis=_json_get(row, "final_diagnosis_json", None),
            guided_test_state=_json_get(row, "guided_test_state_json", None),
            guided_test_results=_json_get(row, "guided_test_results_json", None),
            reviewed_at=_row_get(row, "reviewed_at"),
            completed_at=_row_get(row, "completed_at"),
            created_at=_row_get(row, "created_at", ""),
            updated_at=_row_get(row, "updated_at"),
        )


@dataclass
class CaseFile:
    id: str
    patient_id: str
    case_file_id: str
    file_name: str
    file_url: str
    session_id: str | None = None
    file_type: str | None = None
    file_size: int | None = None
    category: str = "Other"
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CaseFile":
        return cls(
            id=_row_get(row, "id", ""),
            patient_id=_row_get(row, "patient_id", ""),
            case_file_id=_row_get(row, "case_file_id", ""),
            file_name=_row_get(row, "file_name", ""),
            file_url=_row_get(row, "file_url", ""),
            session_id=_row_get(row, "session_id"),
            file_type=_row_get(row, "file_type"),
            file_size=_row_get(row, "file_size"),
            category=_row_get(row, "category", "Other"),
            created_at=_row_get(row, "created_at", ""),
        )


@dataclass
class Notification:
    id: str
    title: str
    description: str
    user_id: str | None = None
    target_role: str | None = None
    type: str = "SYSTEM"
    status: str = "Unread"
    read_by: List[str] = field(default_factory=list)
    link: str | None = None
    created_at: str = ""

    @property
    def is_broadcast(self) -> bool:
        return not self.user_id and bool(self.target_role)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Notification":
        return cls(
            id=_row_get(row, "id", ""),
            title=_row_get(row, "title", ""),
            description=_row_get(row, "description", ""),
            user_id=_row_get(row, "user_id"),
            target_role=_row_get(row, "target_role"),
            type=_row_get(row, "type", "SYSTEM"),
            status=_row_get(row, "status", "Unread"),
            read_by=_json_get(row, "read_by_json", []),
            link=_row_get(row, "link"),
            created_at=_row_get(row, "created_at", ""),
        )


@dataclass
class DiagnosticModule:
    id: str
    title: str
    region: str
    description: str = ""
    status: str = "Draft"
    questions: List[Dict[str, Any]] = field(default_factory=list)
    created_by: str | None = None
    updated_by: str | None = None
    version: int = 1
    is_default: bool = False
    created_at: str = ""
    updated_at: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DiagnosticModule":
        return cls(
            id=_row_get(row, "id", ""),
            title=_row_get(row, "title", ""),
            region=_row_get(row, "region", "General"),
            description=_row_get(row, "description", "") or "",
            status=_row_get(row, "status", "Draft"),
            questions=_json_get(row, "questions_json", []),
            created_by=_row_get(row, "created_by"),
            updated_by=_row_get(row, "updated_by"),
            version=int(_row_get(row, "version", 1) or 1),
            is_default=bool(_row_get(row, "is_default", 0)),
            created_at=_row_get(row, "created_at", ""),
            updated_at=_row_get(row, "updated_at"),
        )


@dataclass
class Appointment:
    id: str
    patient_id: str
    clinician_id: str
    clinician_name: str
    date: str
    type: str = "General Consultation"
    location: str = "Virtual Session"
    status: str = "Scheduled"
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Appointment":
        return cls(
            id=_row_get(row, "id", ""),
            patient_id=_row_get(row, "patient_id", ""),
            clinician_id=_row_get(row, "clinician_id", ""),
            clinician_name=_row_get(row, "clinician_name", ""),
            date=_row_get(row, "date", ""),
            type=_row_get(row, "type", "General Consultation"),
            location=_row_get(row, "location", "Virtual Session"),
            status=_row_get(row, "status", "Scheduled"),
            created_at=_row_get(row, "created_at", ""),
        )


@dataclass
class TreatmentPlan:
    id: str
    patient_id: str
    clinician_name: str
    condition_name: str
    activities: List[Dict[str, Any]] = field(default_factory=list)
    progress: int = 0
    status: str = "active"
    created_at: str = ""
    updated_at: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TreatmentPlan":
        return cls(
            id=_row_get(row, "id", ""),
            patient_id=_row_get(row, "patient_id", ""),
            clinician_name=_row_get(row, "clinician_name", ""),
            condition_name=_row_get(row, "condition_name", ""),
            activities=_json_get(row, "activities_json", []),
            progress=int(_row_get(row, "progress", 0) or 0),
            status=_row_get(row, "status", "active"),
            created_at=_row_get(row, "created_at", ""),
            updated_at=_row_get(row, "updated_at"),
        )


@dataclass
class Message:
    id: str
    sender_id: str
    receiver_id: str
    conversation_id: str
    content: str
    is_read: bool = False
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Message":
        return cls(
            id=_row_get(row, "id", ""),
            sender_id=_row_get(row, "sender_id", ""),
            receiver_id=_row_get(row, "receiver_id", ""),
            conversation_id=_row_get(row, "conversation_id", ""),
            content=_row_get(row, "content", ""),
            is_read=bool(_row_get(row, "is_read", 0)),
            created_at=_row_get(row, "created_at", ""),
        )


@dataclass
class EmailOtp:
    id: str
    email: str
    otp_hash: str
    expires_at: str
    verified: bool = False
    created_at: str = ""
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "EmailOtp":
        return cls(
            id=_row_get(row, "id", ""),
            email=_row_get(row, "email", ""),
            otp_hash=_row_get(row, "otp_hash", ""),
            expires_at=_row_get(row, "expires_at", ""),
            verified=bool(_row_get(row, "verified", 0)),
            created_at=_row_get(row, "created_at", ""),
            attempts=int(_row_get(row, "attempts", 0) or 0),
        )


def conversation_id_for(user_a: str, user_b: str) -> str:
    return "_".join(sorted([str(user_a), str(user_b)]))
