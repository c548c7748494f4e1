from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
import smtplib
import threading
import time
import uuid
from datetime import timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

from cdss import config
from cdss.store.schemas import EmailOtp
from cdss.store.sqlite_store import SQLiteStore
from cdss.utils.time_utils import now_iso, parse_iso, utc_now

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")

_DB_PATH = config.DB_PATH
_EXPIRATION_MINUTES = config.OTP_EXPIRATION_TIME
_MAX_ATTEMPTS = config.OTP_MAX_ATTEMPTS
_MAILER: Optional["Mailer"] = None


class Mailer:
    def __init__(
        self,
        sender: str = "",
        password: str = "",
        host: str = "smtp.gmail.com",
        port: int = 587,
        enabled: bool = False,
    ) -> None:
        self.sender = sender
        self.password = password
        self.host = host
        self.port = port
        self.enabled = enabled

    def send(self, to: str, subject: str, text: str, html_body: str = "") -> None:
        if not self.enabled:
            logger.info("mail disabled; message to=%s subject=%s body=%s", to, subject, text)
            return
        msg = MIMEMultipart("alternative")
        msg["From"] = f'"CDSS Verification" <{self.sender}>'
        msg["To"] = to
        msg["Subject"] = subject
        msg.attach(MIMEText(text, "plain"))
        if html_body:
            msg.attach(MIMEText(html_body, "html"))
        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            server.starttls()
            if self.sender and self.password:
                server.login(self.sender, self.password)
            server.sendmail(self.sender, [to], msg.as_string())
        logger.info("mail sent to=%s subject=%s", to, subject)


class OtpRateLimiter:
    def __init__(self, window_seconds: int = 60) -> None:
        self.window_seconds = window_seconds
        self._last: Dict[str, float] = {}
        self._lock = threading.Lock()

    def check(self, email: str, now: Optional[float] = None) -> bool:
        key = (email or "").strip().lower()
        now = time.monotonic() if now is None else now
        with self._lock:
            last = self._last.get(key)
            if last is not None and now - last < self.window_seconds:
                return False
            self._last[key] = now
            return True

    def reset(self) -> None:
        with self._lock:
            self._last.clear()


RATE_LIMITER = OtpRateLimiter(config.OTP_RATE_LIMIT_SECONDS)


def configure(
    *,
    db_path: Optional[str] = None,
    mailer: Optional[Mailer] = None,
    expiration_minutes: Optional[int] = None,
    max_attempts: Optional[int] = None,
) -> None:
    global _DB_PATH, _MAILER, _EXPIRATION_MINUTES, _MAX_ATTEMPTS
    if db_path:
        _DB_PATH = db_path
    if mailer is not None:
        _MAILER = mailer
    if expiration_minutes is not None:
        _EXPIRATION_MINUTES = int(expiration_minutes)
    if max_attempts is not None:
        _MAX_ATTEMPTS = int(max_attempts)


def get_mailer() -> Mailer:
    global _MAILER
    if _MAILER is None:
        _MAILER = Mailer(
            sender=config.EMAIL,
            password=config.EMAIL_APP_PWD,
            host=config.SMTP_HOST,
            port=config.SMTP_PORT,
            enabled=config.MAIL_ENABLED,
        )
    return _MAILER


def is_valid_email(email: Any) -> bool:
    return isinstance(email, str) and bool(EMAIL_RE.match(email.strip()))


def generate_otp() -> str:
    return str(1000 + secrets.randbelow(9000))


def hash_otp(code: str) -> str:
    return hashlib.sha256(str(code).encode("utf-8")).hexdigest()


def _matches(code: str, stored_hash: str) -> bool:
    return hmac.compare_digest(hash_otp(code), stored_hash or "")


def _render_email(code: str) -> tuple[str, str]:
    text = f"Your verification code is {code}. It expires in {_EXPIRATION_MINUTES} minutes."
    html_body = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px; border: 1px solid #e0e0e0; border-radius: 10px;">
  <h2 style="color: #333; text-align: center;">Verification Code</h2>
  <p style="font-size: 16px; color: #555;">Your verification code is:</p>
  <div style="text-align: center; margin: 30px 0;">
    <span style="font-size: 32px; font-weight: bold; letter-spacing: 5px; color: #007bff;">{code}</span>
  </div>
  <p style="font-size: 14px; color: #777;">This code will expire in <strong>{_EXPIRATION_MINUTES} minutes</strong>. Please do not share this code with anyone.</p>
  <p style="font-size: 12px; color: #999; text-align: center;">If you didn't request this code, you can safely ignore this email.</p>
</div>
"""
    return text, html_body


def send_otp(email: str) -> Dict[str, Any]:
    email = (email or "").strip().lower()
    store = SQLiteStore(_DB_PATH)
    code = generate_otp()
    now = utc_now()
    store.delete_unverified_otps(email)
    store.add_otp(
        EmailOtp(
            id=uuid.uuid4().hex,
            email=email,
            otp_hash=hash_otp(code),
            expires_at=(now + timedelta(minutes=_EXPIRATION_MINUTES)).isoformat(),
            verified=False,
            created_at=now.isoformat(),
        )
    )
    text, html_body = _render_email(code)
    get_mailer().send(email, "Your Verification Code", text, html_body)
    logger.info("otp issued email=%s ttl_min=%s", email, _EXPIRATION_MINUTES)
    return {"success": True, "message": "OTP sent successfully"}


def _is_expired(record: EmailOtp) -> bool:
    try:
        return utc_now() > parse_iso(record.expires_at)
    except ValueError:
        return True


def verify_otp(email: str, code: str) -> Dict[str, Any]:
    email = (email or "").strip().lower()
    store = SQLiteStore(_DB_PATH)
    record = store.get_pending_otp(email)
    if not record:
        return {"success": False, "message": "Invalid or expired OTP."}
    if _is_expired(record):
        return {"success": False, "message": "OTP has expired."}
    if not _matches(str(code or "").strip(), record.otp_hash):
        attempts = store.record_otp_failure(record.id)
        if attempts >= _MAX_ATTEMPTS:
            store.delete_otp(record.id)
            logger.warning("otp invalidated after %s failed attempts email=%s", attempts, email)
            return {"success": False, "message": "Too many failed attempts. Please request a new OTP."}
        return {"success": False, "message": "Invalid OTP Code."}
    store.mark_otp_verified(record.id)
    user = store.get_user_by_email(email)
    if user and not user.is_verified:
        user.is_verified = True
        user.updated_at = now_iso()
        store.update_user(user)
    logger.info("otp verified email=%s", email)
    return {"success": True, "message": "OTP verified successfully"}


def consume_verified_otp(store: SQLiteStore, email: str) -> bool:
    """Use up a verified, unexpired code for ``email``; True when one existed."""
    email = (email or "").strip().lower()
    record = store.get_verified_otp(email)
    if record is None or _is_expired(record):
        return False
    store.delete_otps_for(email)
    return True
