import os
import re

import pytest
from fastapi.testclient import TestClient

import app as cdss_app
from cdss import config
from cdss.agents import triage_agent
from cdss.auth import otp_service
from cdss.store.seed_demo import seed


class RecordingMailer(otp_service.Mailer):
    def __init__(self):
        super().__init__(enabled=False)
        self.sent = []

    def send(self, to, subject, text, html_body=""):
        self.sent.append({"to": to, "subject": subject, "text": text})

    def last_code(self, email):
        for item in reversed(self.sent):
            if item["to"] == email:
                match = re.search(r"\b(\d{4})\b", item["text"])
                if match:
                    return match.group(1)
        return None


@pytest.fixture()
def mailer():
    return RecordingMailer()


@pytest.fixture()
def store(tmp_path, mailer):
    cdss_app.configure(
        db_path=os.path.join(str(tmp_path), "cdss.db"),
        uploads_dir=os.path.join(str(tmp_path), "uploads"),
        rules_dir=config.RULES_DIR,
    )
    otp_service.configure(
        mailer=mailer,
        expiration_minutes=config.OTP_EXPIRATION_TIME,
        max_attempts=config.OTP_MAX_ATTEMPTS,
    )
    triage_agent.configure(client=None, api_key="")
    return cdss_app.get_store()


@pytest.fixture()
def accounts(store):
    return seed(store)


@pytest.fixture()
def client(store):
    with TestClient(cdss_app.app) as c:
        yield c


def login_headers(client, email, password=config.DEMO_DEFAULT_PASSWORD):
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return {"Authorization": "Bearer " + resp.json()["token"]}


@pytest.fixture()
def patient_headers(client, accounts):
    return login_headers(client, accounts["PATIENT"].email)


@pytest.fixture()
def clinician_headers(client, accounts):
    return login_headers(client, accounts["CLINICIAN"].email)


@pytest.fixture()
def admin_headers(client, accounts):
    return login_headers(client, accounts["ADMIN"].email)


@pytest.fixture()
def login_as(client):
    def _login(email, password=config.DEMO_DEFAULT_PASSWORD):
        return login_headers(client, email, password)

    return _login
