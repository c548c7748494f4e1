import io

from PIL import Image

from cdss import config
from cdss.agents import triage_agent
from cdss.services import media
from cdss.services.clinician_settings import WEEKDAYS
from cdss.store.schemas import DiagnosisSession


def _complete_wizard(client, headers, region="knee"):
    resp = client.post("/api/assessment/start", json={"region": region}, headers=headers)
    assert resp.status_code == 200, resp.text
    wizard = resp.json()["wizard"]
    for _ in range(100):
        if wizard["isComplete"]:
            break
        question = wizard["currentQuestion"]
        resp = client.post(
            "/api/assessment/answer",
            json={"questionId": question["id"], "answer": question["answers"][0]["value"]},
            headers=headers,
        )
        assert resp.status_code == 200, resp.text
        wizard = resp.json()["wizard"]
    return wizard


def _submit_case(client, headers):
    _complete_wizard(client, headers)
    resp = client.post(
        "/api/assessment/finish",
        json={"biodata": {"fullName": "Pat Mensah", "sex": "Female", "ageRange": "40-49"}},
        headers=headers,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


# auth


def test_register_login_logout(client, accounts):
    payload = {"email": "Jo@Example.com", "password": "Strong@123", "firstName": "Jo", "lastName": "Ade", "role": "PATIENT"}
    resp = client.post("/api/auth/register", json=payload)
    assert resp.status_code == 201
    assert resp.json()["user"]["email"] == "jo@example.com"
    assert "password_hash" not in resp.json()["user"]

    assert client.post("/api/auth/register", json=payload).status_code == 409
    assert client.post("/api/auth/register", json=dict(payload, email="x@y.io", role="ADMIN")).json() == {
        "error": "Invalid role"
    }
    assert client.post("/api/auth/register", json=dict(payload, email="z@y.io", firstName="")).status_code == 400
    long_name = dict(payload, email="n@y.io", lastName="L" * 51)
    assert client.post("/api/auth/register", json=long_name).json()["error"] == "Names cannot be more than 50 characters"

    resp = client.post("/api/auth/login", json={"email": "jo@example.com", "password": "Strong@123"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["redirect"] == "/patient/dashboard"
    assert body["user"]["role"] == "PATIENT"
    assert client.cookies.get("cdss_token")

    assert client.get("/api/auth/session").json()["user"]["email"] == "jo@example.com"
    client.post("/api/auth/logout")
    client.cookies.clear()
    assert client.get("/api/auth/session").status_code == 401


def test_login_failures(client, accounts, store):
    assert client.post("/api/auth/login", json={"email": "patient@cdss.local", "password": "nope"}).status_code == 401
    patient = accounts["PATIENT"]
    patient.is_active = False
    store.update_user(patient)
    resp = client.post("/api/auth/login", json={"email": patient.email, "password": "Demo@1234"})
    assert resp.status_code == 403
    assert resp.json() == {"error": "Account is deactivated"}


def test_otp_routes(client, mailer):
    assert client.post("/api/otp/send", json={"email": "bad"}).json() == {"error": "Valid email is required"}
    resp = client.post("/api/otp/send", json={"email": "new@example.com"})
    assert resp.status_code == 200
    again = client.post("/api/otp/send", json={"email": "new@example.com"})
    assert again.status_code == 429
    assert again.json() == {"error": "Please wait before requesting another OTP."}

    assert client.post("/api/otp/verify", json={"email": "new@example.com"}).status_code == 400
    wrong = client.post("/api/otp/verify", json={"email": "new@example.com", "otp": "0000"})
    assert wrong.status_code == 400
    assert wrong.json() == {"error": "Invalid OTP Code."}
    code = mailer.last_code("new@example.com")
    ok = client.post("/api/otp/verify", json={"email": "new@example.com", "otp": code})
    assert ok.json() == {"success": True, "message": "OTP verified successfully"}


def test_registration_consumes_verified_otp(client, store, mailer):
    client.post("/api/otp/send", json={"email": "ver@example.com"})
    client.post("/api/otp/verify", json={"email": "ver@example.com", "otp": mailer.last_code("ver@example.com")})
    payload = {"email": "ver@example.com", "password": "Strong@123", "firstName": "Vi", "lastName": "Ray"}
    resp = client.post("/api/auth/register", json=payload)
    assert resp.status_code == 201
    assert store.get_user_by_email("ver@example.com").is_verified is True
    assert store.get_verified_otp("ver@example.com") is None

    client.post("/api/auth/register", json=dict(payload, email="plain@example.com"))
    assert store.get_user_by_email("plain@example.com").is_verified is False


def test_registration_requires_otp_when_mail_is_on(client, store, mailer):
    mailer.enabled = True
    payload = {"email": "gate@example.com", "password": "Strong@123", "firstName": "Ga", "lastName": "Te"}
    resp = client.post("/api/auth/register", json=payload)
    assert resp.status_code == 400
    assert resp.json() == {"error": "Please verify your email before registering"}
    assert store.get_user_by_email("gate@example.com") is None

    client.post("/api/otp/send", json={"email": "gate@example.com"})
    client.post("/api/otp/verify", json={"email": "gate@example.com", "otp": mailer.last_code("gate@example.com")})
    assert client.post("/api/auth/register", json=payload).status_code == 201


def test_page_guards(client, accounts, login_as):
    resp = client.get("/patient/dashboard", follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == "/login"

    login_as(accounts["PATIENT"].email)
    resp = client.get("/admin/dashboard", follow_redirects=False)
    assert resp.headers["location"] == "/patient/dashboard"
    page = client.get("/patient/dashboard")
    assert page.status_code == 200
    assert "Pat" in page.text
    assert client.get("/login", follow_redirects=False).headers["location"] == "/patient/dashboard"


def test_pages_follow_the_stored_role(client, store, accounts, login_as):
    clinician = accounts["CLINICIAN"]
    clinician.role = "ADMIN"
    store.update_user(clinician)
    headers = login_as(clinician.email)
    assert client.get("/admin/users", headers=headers).status_code == 200

    clinician.role = "PATIENT"
    store.update_user(clinician)
    assert client.get("/api/admin/users", headers=headers).status_code == 403
    resp = client.get("/admin/users", headers=headers, follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == "/patient/dashboard"
    assert "admin@cdss.local" not in resp.text


def test_portal_pages_render(client, accounts, login_as):
    login_as(accounts["ADMIN"].email)
    for path in ("/admin/dashboard", "/admin/users?role=CLINICIAN", "/admin/diagnostics?status=Active", "/clinician/dashboard"):
        resp = client.get(path)
        assert resp.status_code == 200, path
        assert "cdssApi" in resp.text
    assert "side-stack" in client.get("/clinician/dashboard").text

    client.cookies.clear()
    login_as(accounts["PATIENT"].email)
    for page in ("assessment", "documents", "messages"):
        assert client.get(f"/patient/{page}").status_code == 200


# assessment and review flow


def test_wizard_back_and_reset(client, patient_headers):
    assert client.post("/api/assessment/answer", json={"questionId": "x", "answer": "Yes"}, headers=patient_headers).json() == {
        "error": "No assessment in progress"
    }
    missing = client.post("/api/assessment/start", json={"region": "tail"}, headers=patient_headers)
    assert missing.status_code == 404
    assert missing.json()["error"] == "No assessment rules found for region: tail"

    wizard = client.post("/api/assessment/start", json={"region": "lumbar"}, headers=patient_headers).json()["wizard"]
    assert wizard["region"] == "Lumbar"
    first = wizard["currentQuestion"]
    wizard = client.post(
        "/api/assessment/answer",
        json={"questionId": first["id"], "answer": first["answers"][0]["value"]},
        headers=patient_headers,
    ).json()["wizard"]
    assert wizard["answeredCount"] == 1
    wizard = client.post("/api/assessment/back", headers=patient_headers).json()["wizard"]
    assert wizard["answeredCount"] == 0
    assert wizard["currentQuestion"]["id"] == first["id"]

    assert client.post("/api/assessment/finish", json={}, headers=patient_headers).status_code == 400
    client.post("/api/assessment/reset", headers=patient_headers)
    assert client.get("/api/assessment/wizard", headers=patient_headers).json()["wizard"]["active"] is False


def test_finished_assessment_reaches_clinicians(client, store, accounts, patient_headers, clinician_headers):
    result = _submit_case(client, patient_headers)
    session = store.get_session(result["sessionId"])
    assert session.status == "pending_review"
    assert session.body_region == "Knee"
    assert session.biodata["fullName"] == "Pat Mensah"
    assert session.patient_facing_analysis["isProvisional"] is True
    assert result["caseFileId"].startswith("pat_mensah-")
    assert result["aiAnalysis"]["source"] == "local"

    notes = client.get("/api/notifications", headers=clinician_headers).json()
    assert "New Assessment Submitted" in [n["title"] for n in notes["data"]]
    assert notes["unreadCount"] >= 1

    own = client.get("/api/diagnosis", headers=patient_headers).json()
    assert [s["id"] for s in own["data"]] == [session.id]
    assert own["pagination"]["total"] == 1
    docs = client.get("/api/documents", headers=patient_headers).json()["data"]
    assert not [d for d in docs if d["file_url"].startswith("internal://")]
    assert [f.session_id for f in store.list_case_files(session.patient_id, include_internal=True)] == [session.id]


def test_case_queue_orders_by_risk_then_age(client, store, accounts, admin_headers):
    patient = accounts["PATIENT"]
    cases = [
        ("low-old", "Low", "2026-01-01T08:00:00+00:00"),
        ("urgent-new", "Urgent", "2026-01-03T08:00:00+00:00"),
        ("moderate", "Moderate", "2026-01-02T08:00:00+00:00"),
        ("urgent-old", "Urgent", "2026-01-01T09:00:00+00:00"),
        ("low-new", "Low", "2026-01-04T08:00:00+00:00"),
        ("unrated", None, "2025-12-31T08:00:00+00:00"),
    ]
    for case_id, risk, created in cases:
        store.save_session(
            DiagnosisSession(
                id=case_id,
                patient_id=patient.id,
                status="pending_review",
                body_region="Knee",
                ai_analysis={"riskLevel": risk} if risk else None,
                created_at=created,
            )
        )
    store.save_session(DiagnosisSession(id="done", patient_id=patient.id, status="reviewed", created_at="2025-01-01T00:00:00+00:00"))

    queue = client.get("/api/admin/cases", headers=admin_headers).json()["data"]
    assert [c["id"] for c in queue] == ["urgent-old", "urgent-new", "moderate", "low-old", "low-new", "unrated"]
    assert queue[-1]["riskLevel"] == "Low"
    assert queue[0]["patientName"] == patient.full_name


def test_assign_review_and_guided_tests(client, store, accounts, patient_headers, clinician_headers, admin_headers):
    session_id = _submit_case(client, patient_headers)["sessionId"]
    clinician = accounts["CLINICIAN"]

    assert client.get("/api/admin/cases", headers=clinician_headers).status_code == 403
    queue = client.get("/api/admin/cases", headers=admin_headers).json()["data"]
    assert queue[0]["id"] == session_id
    resp = client.post(f"/api/admin/cases/{session_id}/assign", json={"clinicianId": clinician.id}, headers=admin_headers)
    assert resp.status_code == 200
    assert store.get_session(session_id).status == "assigned"
    assert store.get_patient_profile(accounts["PATIENT"].id).assigned_clinician_id == clinician.id

    assert client.get(f"/api/diagnosis/{session_id}/guided-test", headers=patient_headers).status_code == 401
    guided = client.get(f"/api/diagnosis/{session_id}/guided-test", headers=clinician_headers).json()
    assert guided["isLocked"] is False
    assert guided["recommendedTests"]
    current = guided["currentTest"]

    bad = client.post(f"/api/diagnosis/{session_id}/guided-test", json={"testId": current["id"], "result": "maybe"}, headers=clinician_headers)
    assert bad.status_code == 400
    recorded = client.post(
        f"/api/diagnosis/{session_id}/guided-test",
        json={"testId": current["id"], "testName": current["name"], "result": "positive", "notes": "clear click"},
        headers=clinician_headers,
    ).json()
    assert recorded["testCount"] == 1
    twice = client.post(
        f"/api/diagnosis/{session_id}/guided-test",
        json={"testId": current["id"], "result": "negative"},
        headers=clinician_headers,
    )
    assert twice.status_code == 409
    assert twice.json() == {"error": "Test already recorded"}

    assert client.put(f"/api/diagnosis/{session_id}/guided-test", json={"action": "lock"}, headers=clinician_headers).status_code == 400
    done = client.put(f"/api/diagnosis/{session_id}/guided-test", json={"action": "complete"}, headers=clinician_headers).json()
    assert done["isLocked"] is True
    assert store.get_session(session_id).status == "completed"
    locked = client.post(
        f"/api/diagnosis/{session_id}/guided-test",
        json={"testName": "Extra", "result": "negative"},
        headers=clinician_headers,
    )
    assert locked.status_code == 403
    assert client.get(f"/api/diagnosis/{session_id}/guided-test", headers=clinician_headers).json()["isLocked"] is True

    review = client.patch(
        f"/api/diagnosis/{session_id}",
        json={"clinicianReview": {"confirmedDiagnosis": "Meniscal Tear", "notes": "MRI advised"}},
        headers=clinician_headers,
    ).json()["data"]
    assert review["status"] == "reviewed"
    titles = [n["title"] for n in client.get("/api/notifications", headers=patient_headers).json()["data"]]
    assert "Assessment Reviewed" in titles

    assert client.patch(f"/api/diagnosis/{session_id}", json={"status": "bogus"}, headers=clinician_headers).status_code == 400
    assert client.delete(f"/api/diagnosis/{session_id}", headers=patient_headers).status_code == 401
    assert client.delete(f"/api/diagnosis/{session_id}", headers=clinician_headers).status_code == 200
    assert store.get_session(session_id).status == "archived"


def test_session_visibility(client, accounts, login_as, patient_headers, clinician_headers):
    session_id = _submit_case(client, patient_headers)["sessionId"]
    client.post(
        "/api/auth/register",
        json={"email": "other@example.com", "password": "Strong@123", "firstName": "Oz", "lastName": "Other"},
    )
    other = login_as("other@example.com", "Strong@123")
    assert client.get(f"/api/diagnosis/{session_id}", headers=other).status_code == 401
    assert client.get(f"/api/diagnosis/{session_id}", headers=clinician_headers).status_code == 200
    assert client.get("/api/diagnosis/missing", headers=clinician_headers).status_code == 404


def test_heuristic_session_route(client, accounts, patient_headers):
    bad = client.post("/api/diagnosis", json={"symptoms": [{"response": "Yes"}]}, headers=patient_headers)
    assert bad.status_code == 400
    resp = client.post(
        "/api/diagnosis",
        json={
            "symptoms": [
                {"questionId": "loc", "questionCategory": "pain_location", "response": "shoulder"},
                {"questionId": "night", "questionCategory": "night_pain", "response": "Yes"},
            ]
        },
        headers=patient_headers,
    )
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["patient_id"] == accounts["PATIENT"].id
    assert data["temporal_diagnosis"]["primaryDiagnosis"]["conditionName"] == "Rotator Cuff Tear"


def test_ai_analysis_route(client, patient_headers):
    assert client.post("/api/diagnosis/ai-analysis", json={"selectedRegion": "Knee"}, headers=patient_headers).json() == {
        "error": "Missing assessment data"
    }
    ok = client.post(
        "/api/diagnosis/ai-analysis",
        json={"selectedRegion": "Knee", "responses": {"Does the knee lock?": "Yes"}},
        headers=patient_headers,
    )
    assert ok.status_code == 200
    assert ok.json()["analysis"]["source"] == "local"

    class Broken:
        class chat:
            class completions:
                @staticmethod
                def create(**kwargs):
                    raise TimeoutError("upstream timeout")

    triage_agent.configure(client=Broken)
    failed = client.post(
        "/api/diagnosis/ai-analysis",
        json={"selectedRegion": "Knee", "responses": {"q": "a"}},
        headers=patient_headers,
    )
    assert failed.status_code == 500
    assert failed.json() == {"error": "AI analysis failed"}


# admin


def test_admin_user_management(client, store, accounts, admin_headers, patient_headers):
    assert client.get("/api/admin/users", headers=patient_headers).status_code == 403
    users = client.get("/api/admin/users?role=CLINICIAN", headers=admin_headers).json()["data"]
    assert [u["email"] for u in users] == ["clinician@cdss.local"]

    patient = accounts["PATIENT"]
    assert client.patch(f"/api/admin/users/{patient.id}/role", json={"role": "GOD"}, headers=admin_headers).json() == {
        "error": "Invalid role provided"
    }
    resp = client.patch(f"/api/admin/users/{patient.id}/role", json={"role": "clinician"}, headers=admin_headers)
    assert resp.json()["data"]["role"] == "CLINICIAN"
    titles = [n.title for n in store.list_notifications_for(patient.id, "CLINICIAN")]
    assert "Role Upgraded" in titles

    admin = accounts["ADMIN"]
    self_off = client.patch(f"/api/admin/users/{admin.id}/status", json={"isActive": False}, headers=admin_headers)
    assert self_off.status_code == 403
    self_demote = client.patch(f"/api/admin/users/{admin.id}/role", json={"role": "PATIENT"}, headers=admin_headers)
    assert self_demote.status_code == 403
    assert self_demote.json() == {"error": "Admins cannot modify their own role or status"}
    assert store.get_user(admin.id).role == "ADMIN"
    assert client.patch(f"/api/admin/users/{patient.id}/status", json={"isActive": "no"}, headers=admin_headers).status_code == 400
    off = client.patch(f"/api/admin/users/{patient.id}/status", json={"isActive": False}, headers=admin_headers)
    assert off.json()["data"]["is_active"] is False
    assert client.get("/api/notifications", headers=patient_headers).status_code == 401


def test_diagnostic_module_crud(client, admin_headers):
    modules = client.get("/api/admin/diagnostic-modules?status=Active", headers=admin_headers).json()["data"]
    assert len(modules) == 6
    default = modules[0]
    assert default["questionCount"] > 0
    assert client.delete(f"/api/admin/diagnostic-modules/{default['id']}", headers=admin_headers).json() == {
        "error": "Cannot delete default modules"
    }

    assert client.post("/api/admin/diagnostic-modules", json={"region": "Hip"}, headers=admin_headers).status_code == 400
    assert client.post("/api/admin/diagnostic-modules", json={"title": "X", "region": "Tail"}, headers=admin_headers).status_code == 400
    created = client.post("/api/admin/diagnostic-modules", json={"title": "Hip Screen", "region": "hip"}, headers=admin_headers)
    assert created.status_code == 201
    module = created.json()["data"]
    assert module["status"] == "Draft"
    assert module["region"] == "Hip"

    updated = client.put(
        f"/api/admin/diagnostic-modules/{module['id']}", json={"status": "Review"}, headers=admin_headers
    ).json()["data"]
    assert updated["version"] == 2
    assert updated["status"] == "Review"
    assert client.delete(f"/api/admin/diagnostic-modules/{module['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/admin/diagnostic-modules/{module['id']}", headers=admin_headers).status_code == 404


def test_admin_notifications(client, accounts, admin_headers, patient_headers, clinician_headers):
    assert client.post("/api/admin/notifications", json={"title": "x"}, headers=admin_headers).json() == {
        "error": "Missing required fields"
    }
    assert client.post(
        "/api/admin/notifications",
        json={"title": "x", "description": "y", "targetRole": "ROBOTS"},
        headers=admin_headers,
    ).status_code == 400
    sent = client.post(
        "/api/admin/notifications",
        json={"title": "Clinic closed", "description": "Friday", "targetRole": "PATIENT"},
        headers=admin_headers,
    ).json()["data"]
    patient_notes = client.get("/api/notifications", headers=patient_headers).json()
    assert sent["id"] in [n["id"] for n in patient_notes["data"]]
    assert sent["id"] not in [n["id"] for n in client.get("/api/notifications", headers=clinician_headers).json()["data"]]

    assert client.patch(f"/api/notifications/{sent['id']}/read", headers=clinician_headers).status_code == 401
    assert client.patch(f"/api/notifications/{sent['id']}/read", headers=patient_headers).json() == {"success": True}
    assert client.patch("/api/notifications/missing/read", headers=patient_headers).status_code == 404

    assert client.delete(f"/api/admin/notifications/{sent['id']}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/admin/notifications/{sent['id']}", headers=admin_headers).status_code == 404


# clinician care


def test_appointments_plans_referrals(client, store, accounts, patient_headers, clinician_headers):
    patient = accounts["PATIENT"]
    assert client.post("/api/appointments", json={"patientId": patient.id}, headers=clinician_headers).status_code == 400
    assert client.post(
        "/api/appointments", json={"patientId": patient.id, "date": "2026-11-02", "time": "09:30"}, headers=patient_headers
    ).status_code == 401
    appt = client.post(
        "/api/appointments",
        json={"patientId": patient.id, "date": "2026-11-02", "time": "09:30", "type": "Follow-up"},
        headers=clinician_headers,
    ).json()["data"]
    assert appt["date"] == "2026-11-02T09:30"
    assert [a["id"] for a in client.get("/api/appointments", headers=patient_headers).json()["data"]] == [appt["id"]]
    cancelled = client.patch(f"/api/appointments/{appt['id']}", json={"status": "Cancelled"}, headers=clinician_headers)
    assert cancelled.json()["data"]["status"] == "Cancelled"

    activity = {"goal": "Restore knee flexion", "activeTreatment": "Manual therapy", "homeExercise": "Heel slides"}
    first = client.post(
        "/api/treatment-plans",
        json={"patientId": patient.id, "conditionName": "Meniscal Tear", "activity": activity},
        headers=clinician_headers,
    ).json()["data"]
    second = client.post(
        "/api/treatment-plans",
        json={"patientId": patient.id, "conditionName": "Meniscal Tear", "activity": activity},
        headers=clinician_headers,
    ).json()["data"]
    assert first["id"] == second["id"]
    assert second["progress"] == 10
    assert len(second["activities"]) == 2
    assert client.get("/api/treatment-plans", headers=patient_headers).json()["data"][0]["id"] == first["id"]

    assert client.post("/api/referrals", json={"patientId": patient.id}, headers=clinician_headers).status_code == 400
    ref = client.post(
        "/api/referrals", json={"patientId": patient.id, "specialty": "Orthopaedic Surgeon"}, headers=clinician_headers
    )
    assert ref.json() == {"success": True, "message": "Referral sent successfully"}
    titles = [n["title"] for n in client.get("/api/notifications", headers=patient_headers).json()["data"]]
    assert {"Appointment Scheduled", "Appointment Cancelled", "Treatment Plan Updated", "New Referral Authorized"} <= set(titles)


def test_messages_between_patient_and_clinician(client, accounts, patient_headers, clinician_headers):
    patient, clinician = accounts["PATIENT"], accounts["CLINICIAN"]
    assert client.post("/api/messages", json={"receiverId": clinician.id}, headers=patient_headers).status_code == 400
    sent = client.post(
        "/api/messages", json={"receiverId": clinician.id, "content": "Knee feels better"}, headers=patient_headers
    )
    assert sent.status_code == 201
    thread = client.get(f"/api/messages/{patient.id}", headers=clinician_headers).json()["data"]
    assert [m["content"] for m in thread] == ["Knee feels better"]


# uploads and documents


def _png():
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), (207, 230, 126)).save(buf, format="PNG")
    return buf.getvalue()


def test_upload_and_document_lifecycle(client, accounts, patient_headers, clinician_headers):
    assert client.post("/api/upload", headers=patient_headers).json() == {"error": "No file provided"}
    bad = client.post("/api/upload", files={"file": ("a.txt", b"hello", "text/plain")}, headers=patient_headers)
    assert bad.status_code == 400

    up = client.post(
        "/api/upload",
        files={"file": ("knee.png", _png(), "image/png")},
        data={"preset": "case_files"},
        headers=patient_headers,
    )
    assert up.status_code == 200, up.text
    url = up.json()["data"]["url"]
    served = client.get(url)
    assert served.status_code == 200
    assert served.content[:4] == b"\x89PNG"
    assert client.get("/uploads/../cdss.db").status_code == 404
    assert client.get("/uploads/case_files/missing.png").status_code == 404

    media.configure(max_upload_mb=0)
    try:
        big = client.post("/api/upload", files={"file": ("knee.png", _png(), "image/png")}, headers=patient_headers)
    finally:
        media.configure(max_upload_mb=config.MAX_UPLOAD_MB)
    assert big.status_code == 413
    assert big.json() == {"error": "File too large"}

    doc = client.post(
        "/api/documents",
        json={"fileUrl": url, "fileName": "knee.png", "fileType": "image/png", "category": "Imaging"},
        headers=patient_headers,
    ).json()["data"]
    assert doc["category"] == "Imaging"
    assert client.get("/api/documents", headers=clinician_headers).status_code == 400
    listed = client.get(f"/api/documents?patientId={accounts['PATIENT'].id}", headers=clinician_headers).json()["data"]
    assert doc["id"] in [d["id"] for d in listed]
    assert client.delete(f"/api/documents/{doc['id']}", headers=patient_headers).status_code == 200


# profile and settings


def test_profile_and_password(client, patient_headers):
    profile = client.get("/api/patients/profile", headers=patient_headers).json()
    assert profile["data"]["email"] == "patient@cdss.local"
    assert profile["profile"]["assigned_clinician_id"]

    updated = client.patch("/api/patients/profile", json={"phone": "+233 20 000 0000"}, headers=patient_headers).json()
    assert updated["data"]["phone"] == "+233 20 000 0000"
    assert client.patch("/api/patients/profile", json={"firstName": ""}, headers=patient_headers).status_code == 400

    wrong = client.put(
        "/api/settings/password",
        json={"currentPassword": "nope-nope", "newPassword": "Fresh@1234", "confirmPassword": "Fresh@1234"},
        headers=patient_headers,
    )
    assert wrong.json() == {"error": "Current password is incorrect."}
    ok = client.put(
        "/api/settings/password",
        json={"currentPassword": "Demo@1234", "newPassword": "Fresh@1234", "confirmPassword": "Fresh@1234"},
        headers=patient_headers,
    )
    assert ok.json()["success"] is True
    assert client.post("/api/auth/login", json={"email": "patient@cdss.local", "password": "Fresh@1234"}).status_code == 200


def test_clinician_professional_and_security_settings(client, store, accounts, login_as, clinician_headers, patient_headers):
    assert client.get("/api/clinician/settings", headers=patient_headers).status_code == 401
    settings = client.get("/api/clinician/settings", headers=clinician_headers).json()
    assert settings["profile"]["role"] == "CLINICIAN"
    assert settings["availability"]["weeklySchedule"]["sunday"]["enabled"] is False

    missing = client.patch("/api/clinician/settings/professional", json={"licenseNumber": "PT-1"}, headers=clinician_headers)
    assert missing.json() == {"error": "License issuing body is required"}
    professional = client.patch(
        "/api/clinician/settings/professional",
        json={
            "licenseNumber": "PT-2201",
            "licenseBody": "Allied Health Council",
            "experienceYears": "7",
            "specializations": ["Sports", "Orthopaedics"],
            "primaryPracticeArea": "Outpatient",
        },
        headers=clinician_headers,
    ).json()
    assert professional["experienceYears"] == 7
    assert professional["specializations"] == ["Sports", "Orthopaedics"]
    clinician = store.get_user(accounts["CLINICIAN"].id)
    assert clinician.license_number == "PT-2201"
    assert clinician.specialization == "Sports, Orthopaedics"

    bad_slot = {
        "sessionBuffer": 10,
        "acceptNewPatients": True,
        "weeklySchedule": {day: {"enabled": True, "timeSlots": [{"start": "25:00", "end": "10:00"}]} for day in WEEKDAYS},
    }
    assert client.patch("/api/clinician/settings/availability", json=bad_slot, headers=clinician_headers).status_code == 400
    prefs = client.patch(
        "/api/clinician/settings/notifications",
        json={"email": False, "inApp": True, "events": ["new_case"]},
        headers=clinician_headers,
    ).json()
    assert prefs == {"email": False, "inApp": True, "events": ["new_case"]}
    assert store.get_user(clinician.id).settings["notifications"]["email"] is False

    assert client.patch("/api/clinician/settings/security", json={}, headers=clinician_headers).json() == {"error": "Invalid request"}
    changed = client.patch(
        "/api/clinician/settings/security",
        json={"currentPassword": "Demo@1234", "newPassword": "Clinic@2024", "confirmPassword": "Clinic@2024"},
        headers=clinician_headers,
    )
    assert changed.json() == {"message": "Password updated successfully"}
    login_as(clinician.email, "Clinic@2024")
    page = client.get("/clinician/settings")
    assert page.status_code == 200
    assert "PT-2201" in page.text


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_direct_assessment_submit(client, store, patient_headers):
    assert client.post("/api/assessment/submit", json={"bodyRegion": "Knee"}, headers=patient_headers).json() == {
        "error": "Missing required fields"
    }
    not_a_list = client.post("/api/assessment/submit", json={"bodyRegion": "Knee", "symptomData": {"night": "Yes"}}, headers=patient_headers)
    assert not_a_list.status_code == 400
    assert not_a_list.json() == {"error": "symptomData must be a list"}
    resp = client.post(
        "/api/assessment/submit",
        json={
            "bodyRegion": "Shoulder",
            "symptomData": [{"questionId": "night", "question": "Pain at night?", "response": "Yes", "questionCategory": "night_pain"}],
            "redFlags": [{"redFlagText": "Unexplained weight loss"}],
            "mediaUrls": ["/uploads/medical_image/x.png"],
        },
        headers=patient_headers,
    )
    assert resp.status_code == 201
    session = store.get_session(resp.json()["sessionId"])
    assert session.ai_analysis["riskLevel"] == "Urgent"
    assert session.ai_analysis["redFlags"] == ["Unexplained weight loss"]
    assert session.media_urls == ["/uploads/medical_image/x.png"]
    admin_titles = [n.title for n in store.list_notifications_for("nobody", "ADMIN")]
    assert "Urgent Case Pending Review" in admin_titles
