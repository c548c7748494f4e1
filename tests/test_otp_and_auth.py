from cdss.auth import credentials, otp_service, session_tokens
from cdss.store.schemas import User
from cdss.utils.time_utils import parse_iso


def test_send_and_verify_otp(store, mailer):
    result = otp_service.send_otp("New.User@Example.com")
    assert result == {"success": True, "message": "OTP sent successfully"}
    code = mailer.last_code("new.user@example.com")
    assert code is not None and len(code) == 4

    assert otp_service.verify_otp("new.user@example.com", "0000") == {
        "success": False,
        "message": "Invalid OTP Code.",
    }
    assert otp_service.verify_otp("new.user@example.com", code)["success"] is True
    # a verified code cannot be replayed
    assert otp_service.verify_otp("new.user@example.com", code)["message"] == "Invalid or expired OTP."


def test_resend_replaces_pending_code(store, mailer):
    otp_service.send_otp("a@b.co")
    first = mailer.last_code("a@b.co")
    otp_service.send_otp("a@b.co")
    second = mailer.last_code("a@b.co")
    if first != second:
        assert otp_service.verify_otp("a@b.co", first)["success"] is False
    assert otp_service.verify_otp("a@b.co", second)["success"] is True


def test_expired_otp(store, mailer):
    otp_service.configure(expiration_minutes=-1)
    otp_service.send_otp("late@example.com")
    code = mailer.last_code("late@example.com")
    assert otp_service.verify_otp("late@example.com", code) == {"success": False, "message": "OTP has expired."}


def test_code_is_invalidated_after_repeated_failures(store, mailer):
    otp_service.configure(max_attempts=3)
    otp_service.send_otp("guess@example.com")
    code = mailer.last_code("guess@example.com")
    assert otp_service.verify_otp("guess@example.com", "0000")["message"] == "Invalid OTP Code."
    assert otp_service.verify_otp("guess@example.com", "0001")["message"] == "Invalid OTP Code."
    assert otp_service.verify_otp("guess@example.com", "0002") == {
        "success": False,
        "message": "Too many failed attempts. Please request a new OTP.",
    }
    assert otp_service.verify_otp("guess@example.com", code)["message"] == "Invalid or expired OTP."


def test_verify_marks_existing_user_verified(store, accounts, mailer):
    patient = accounts["PATIENT"]
    patient.is_verified = False
    store.update_user(patient)
    otp_service.send_otp(patient.email)
    otp_service.verify_otp(patient.email, mailer.last_code(patient.email))
    assert store.get_user(patient.id).is_verified is True


def test_timestamps_carry_utc_offset(store, accounts, mailer):
    otp_service.send_otp("tz@example.com")
    record = store.get_pending_otp("tz@example.com")
    assert record.expires_at.endswith("+00:00")
    assert record.created_at.endswith("+00:00")
    assert accounts["PATIENT"].created_at.endswith("+00:00")
    assert parse_iso("2026-01-01T08:00:00").utcoffset().total_seconds() == 0


def test_rate_limiter_window():
    limiter = otp_service.OtpRateLimiter(window_seconds=60)
    assert limiter.check("x@y.io", now=100.0)
    assert not limiter.check("X@y.io", now=130.0)
    assert limiter.check("x@y.io", now=161.0)
    assert limiter.check("other@y.io", now=161.0)


def test_email_validation():
    assert otp_service.is_valid_email("a@b.co")
    assert not otp_service.is_valid_email("not-an-email")
    assert not otp_service.is_valid_email(None)


def test_password_hash_round_trip():
    stored = credentials.hash_password("Secret@123")
    assert stored != "Secret@123"
    assert credentials.verify_password("Secret@123", stored)
    assert not credentials.verify_password("secret@123", stored)


def test_authenticate_and_change_password(store, accounts):
    patient = accounts["PATIENT"]
    assert credentials.authenticate(patient.email, "Demo@1234").id == patient.id
    assert credentials.authenticate(patient.email, "wrong-pass") is None

    assert credentials.change_password(patient.id, "Demo@1234", "short", "short") == (
        False,
        "New password must be at least 8 characters.",
    )
    assert credentials.change_password(patient.id, "Demo@1234", "NewPass@99", "NewPass@98")[0] is False
    assert credentials.change_password(patient.id, "bad-old-pw", "NewPass@99", "NewPass@99") == (
        False,
        "Current password is incorrect.",
    )
    assert credentials.change_password(patient.id, "Demo@1234", "NewPass@99", "NewPass@99") == (True, "Password updated")
    assert credentials.authenticate(patient.email, "NewPass@99") is not None


def test_session_token_claims():
    user = User(id="u1", email="c@x.io", password_hash="", first_name="Cy", last_name="Doe", role="CLINICIAN")
    claims = session_tokens.read_token(session_tokens.issue_token(user))
    assert claims["id"] == "u1"
    assert claims["role"] == "CLINICIAN"
    assert claims["firstName"] == "Cy"
    assert session_tokens.read_token(session_tokens.issue_token(user, max_age_days=-1)) is None
    assert session_tokens.read_token("garbage") is None


def test_page_redirect_rules():
    patient = {"id": "p", "role": "PATIENT"}
    admin = {"id": "a", "role": "ADMIN"}
    assert session_tokens.page_redirect("/patient/dashboard", None) == "/login"
    assert session_tokens.page_redirect("/admin/users", patient) == "/patient/dashboard"
    assert session_tokens.page_redirect("/patient/dashboard", patient) is None
    assert session_tokens.page_redirect("/clinician/dashboard", admin) is None
    assert session_tokens.page_redirect("/login", None) is None
