from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Request

from cdss import config
from cdss.store.schemas import User

logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"

DASHBOARDS = {
    "ADMIN": "/admin/dashboard",
    "CLINICIAN": "/clinician/dashboard",
    "PATIENT": "/patient/dashboard",
}

# Path prefix -> roles allowed to open it
_PAGE_RULES = (
    ("/admin", ("ADMIN",)),
    ("/clinician", ("CLINICIAN", "ADMIN")),
    ("/patient", ("PATIENT", "ADMIN")),
)


def build_claims(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "role": user.role,
        "avatar": user.avatar,
    }


def issue_token(user: User, max_age_days: Optional[int] = None) -> str:
    days = config.SESSION_MAX_AGE_DAYS if max_age_days is None else max_age_days
    payload = dict(build_claims(user))
    payload["exp"] = datetime.now(timezone.utc) + timedelta(days=days)
    return jwt.encode(payload, config.AUTH_SECRET, algorithm=_ALGORITHM)


def read_token(token: str) -> Optional[Dict[str, Any]]:
    if not token:
        return None
    try:
        data = jwt.decode(token, config.AUTH_SECRET, algorithms=[_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.info("session token expired")
        return None
    except jwt.InvalidTokenError:
        return None
    if not data.get("id") or data.get("role") not in DASHBOARDS:
        return None
    return data


def resolve_request_claims(request: Request) -> Optional[Dict[str, Any]]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return read_token(auth_header.split(" ", 1)[1].strip())
    return read_token(request.cookies.get(config.AUTH_COOKIE) or "")


def dashboard_for(role: Optional[str]) -> str:
    return DASHBOARDS.get(str(role or ""), "/login")


def page_redirect(path: str, claims: Optional[Dict[str, Any]]) -> Optional[str]:
    """Return where to send the visitor, or None when the page may be served."""
    for prefix, roles in _PAGE_RULES:
        if path == prefix or path.startswith(prefix + "/"):
            if not claims:
                return "/login"
            if claims.get("role") not in roles:
                return dashboard_for(claims.get("role"))
            return None
    return None
