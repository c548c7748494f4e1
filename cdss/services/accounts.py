from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Tuple

from cdss.auth import credentials, otp_service, session_tokens
from cdss.services.errors import ServiceError, not_found
from cdss.store.schemas import PatientProfile, User
from cdss.store.sqlite_store import SQLiteStore
from cdss.utils.time_utils import now_iso

logger = logging.getLogger(__name__)

PUBLIC_ROLES = ("PATIENT", "CLINICIAN")
MAX_NAME_LENGTH = 50
PROFILE_FIELDS = {
    "firstName": "first_name",
    "lastName": "last_name",
    "phone": "phone",
    "gender": "gender",
    "dateOfBirth": "date_of_birth",
    "avatar": "avatar",
}


def _check_name(value: str) -> str:
    value = (value or "").strip()
    if len(value) > MAX_NAME_LENGTH:
        raise ServiceError(f"Names cannot be more than {MAX_NAME_LENGTH} characters", 400)
    return value


def register_user(store: SQLiteStore, payload: Dict[str, Any]) -> User:
    email = str(payload.get("email") or "").strip().lower()
    password = str(payload.get("password") or "")
    first_name = str(payload.get("firstName") or "").strip()
    last_name = str(payload.get("lastName") or "").strip()
    role = str(payload.get("role") or "PATIENT").strip().upper()

    if not email or not password or not first_name or not last_name:
        raise ServiceError("All fields are required", 400)
    if role not in PUBLIC_ROLES:
        raise ServiceError("Invalid role", 400)
    if not otp_service.is_valid_email(email):
        raise ServiceError("Valid email is required", 400)
    if len(password) < credentials.MIN_PASSWORD_LENGTH:
        raise ServiceError(f"Password must be at least {credentials.MIN_PASSWORD_LENGTH} characters", 400)
    first_name = _check_name(first_name)
    last_name = _check_name(last_name)
    if store.get_user_by_email(email) is not None:
        raise ServiceError("User with this email already exists", 409)
    email_verified = otp_service.consume_verified_otp(store, email)
    if not email_verified and otp_service.get_mailer().enabled:
        raise ServiceError("Please verify your email before registering", 400)

    now = now_iso()
    user = User(
        id=uuid.uuid4().hex,
        email=email,
        password_hash=credentials.hash_password(password),
        first_name=first_name,
        last_name=last_name,
        role=role,
        is_verified=email_verified,
        created_at=now,
        updated_at=now,
    )
    store.create_user(user)
    if role == "PATIENT":
        store.upsert_patient_profile(PatientProfile(user_id=user.id, assigned_clinician_id=None, updated_at=now))
    logger.info("registered user=%s role=%s verified=%s", user.id, role, email_verified)
    return user


def login(store: SQLiteStore, email: str, password: str) -> Tuple[User, str]:
    if not email or not password:
        raise ServiceError("Invalid credentials", 401)
    user = credentials.authenticate(str(email).strip().lower(), str(password))
    if user is None:
        logger.warning("failed login email=%s", email)
        raise ServiceError("Invalid credentials", 401)
    if not user.is_active:
        raise ServiceError("Account is deactivated", 403)
    user.last_login = now_iso()
    store.update_user(user)
    logger.info("login user=%s role=%s", user.id, user.role)
    return user, session_tokens.issue_token(user)


def update_profile(store: SQLiteStore, user_id: str, payload: Dict[str, Any]) -> User:
    user = store.get_user(user_id)
    if user is None:
        raise not_found("User")
    for key, attr in PROFILE_FIELDS.items():
        if key not in payload or payload[key] is None:
            continue
        value = str(payload[key]).strip()
        if key in ("firstName", "lastName"):
            value = _check_name(value)
            if not value:
                raise ServiceError("Names cannot be empty", 400)
        setattr(user, attr, value or None)
    user.updated_at = now_iso()
    store.update_user(user)
    return user
