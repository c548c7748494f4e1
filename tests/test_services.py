import io
import json
import os
from types import SimpleNamespace

import pytest
from PIL import Image

from cdss import config
from cdss.agents import triage_agent
from cdss.services import media, notifications
from cdss.tools import region_rules


def _png_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), (106, 184, 196)).save(buf, format="PNG")
    return buf.getvalue()


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _fake_client(content=None, error=None):
    completions = FakeCompletions(content, error)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


# notifications


def test_direct_notification_read_state(store, accounts):
    patient = accounts["PATIENT"]
    note = notifications.notify_user(store, patient.id, "Hi", "Welcome", type_="unknown-type")
    assert note.type == "SYSTEM"
    assert notifications.unread_count(store, patient) == 1

    with pytest.raises(PermissionError):
        notifications.mark_read(store, note.id, accounts["CLINICIAN"])
    notifications.mark_read(store, note.id, patient)
    assert notifications.unread_count(store, patient) == 0
    assert notifications.mark_read(store, "missing", patient) is None


def test_broadcast_read_is_tracked_per_user(store, accounts):
    note = notifications.broadcast(store, "all", "Maintenance", "Tonight at 10pm")
    admin, clinician = accounts["ADMIN"], accounts["CLINICIAN"]
    notifications.mark_read(store, note.id, admin)

    admin_view = [n for n in notifications.list_for_user(store, admin) if n["id"] == note.id][0]
    clinician_view = [n for n in notifications.list_for_user(store, clinician) if n["id"] == note.id][0]
    assert admin_view["isRead"] and admin_view["isBroadcast"]
    assert not clinician_view["isRead"]


def test_role_broadcast_hidden_from_other_roles(store, accounts):
    note = notifications.notify_clinicians(store, "New case", "Check the queue")
    patient = accounts["PATIENT"]
    assert note.id not in [n["id"] for n in notifications.list_for_user(store, patient)]
    with pytest.raises(PermissionError):
        notifications.mark_read(store, note.id, patient)
    with pytest.raises(ValueError):
        notifications.broadcast(store, "GUESTS", "x", "y")


# media


def test_save_upload_stores_png(store):
    result = media.save_upload("scan.png", "image/png", _png_bytes(), session_id="s1", preset="case files")
    assert result["format"] == "png"
    assert result["url"].startswith("/uploads/")
    path = os.path.join(media.uploads_dir(), result["publicId"] + ".png")
    assert os.path.isfile(path)


@pytest.mark.parametrize(
    "content_type,data,message",
    [
        ("image/png", b"", "No file provided"),
        ("text/plain", b"hello", "Unsupported file type"),
        ("image/png", b"not really a png", "Unsupported file type"),
        ("application/pdf", b"<html>", "Unsupported file type"),
    ],
)
def test_save_upload_rejects(store, content_type, data, message):
    with pytest.raises(ValueError, match=message):
        media.save_upload("f", content_type, data)


def test_save_upload_size_limit(store):
    media.configure(max_upload_mb=0)
    try:
        with pytest.raises(ValueError, match="File too large"):
            media.save_upload("scan.png", "image/png", _png_bytes())
    finally:
        media.configure(max_upload_mb=config.MAX_UPLOAD_MB)


# triage agent


def test_local_analysis_uses_condition_ranking(store):
    result = triage_agent.get_weighted_ai_analysis(
        "Knee",
        symptom_data=[{"questionId": "q1", "question": "Locking?", "response": "Yes"}],
        condition_analysis=[
            {"name": "Meniscal Tear", "likelihood": 80, "confirmationReasons": [{"question": "Locking?", "answer": "Yes"}]},
            {"name": "Knee Osteoarthritis", "likelihood": 40},
        ],
    )
    analysis = result["analysis"]
    assert analysis["source"] == "local"
    assert analysis["temporalDiagnosis"] == "Meniscal Tear"
    assert analysis["confidenceScore"] == 80
    assert analysis["riskLevel"] == "Moderate"
    assert analysis["differentialDiagnoses"] == ["Knee Osteoarthritis"]
    assert triage_agent.get_ai_preliminary_analysis is triage_agent.get_weighted_ai_analysis


def test_local_analysis_red_flags_are_urgent(store):
    result = triage_agent.get_weighted_ai_analysis(
        "Lumbar",
        responses={"Bladder changes?": "Yes"},
        red_flags=[{"redFlagText": "Possible cauda equina"}],
    )
    analysis = result["analysis"]
    assert analysis["riskLevel"] == "Urgent"
    assert analysis["temporalDiagnosis"] == "Unspecified lumbar pain"
    assert "Possible cauda equina" in analysis["reasoning"]


def test_remote_analysis_parses_and_strips_tags(store):
    payload = {
        "temporalDiagnosis": "Rotator Cuff Tear",
        "confidenceScore": "140",
        "riskLevel": "high",
        "reasoning": ["Night pain (shoulder_q1, shoulder_q2)", ""],
    }
    client, completions = _fake_client(content="```json\n" + json.dumps(payload) + "\n```")
    triage_agent.configure(client=client)
    analysis = triage_agent.get_weighted_ai_analysis("Shoulder", responses={"Night pain?": "Yes"})["analysis"]
    assert analysis["confidenceScore"] == 100
    assert analysis["riskLevel"] == "Urgent"
    assert analysis["reasoning"] == ["Night pain"]
    assert completions.calls[0]["response_format"] == {"type": "json_object"}
    assert "Night pain?" in completions.calls[0]["messages"][1]["content"]


def test_remote_failure_raises(store):
    client, _ = _fake_client(error=RuntimeError("timeout"))
    triage_agent.configure(client=client)
    with pytest.raises(triage_agent.AiAnalysisError):
        triage_agent.get_weighted_ai_analysis("Knee", responses={"q": "a"})


def test_therapist_and_patient_views():
    therapist = triage_agent.convert_to_therapist_facing_analysis(
        {"temporalDiagnosis": "Knee Osteoarthritis", "confidenceScore": 72, "riskLevel": "moderate", "reasoning": ["Crepitus (knee_q2)"]},
        symptom_data=[{"questionId": "c", "questionCategory": "crepitus", "response": "Yes"}],
        red_flags=["Fever with swelling"],
    )
    assert therapist["riskLevel"] == "Moderate"
    assert therapist["clinicalIndicators"] == ["Crepitus"]
    assert therapist["redFlags"] == ["Fever with swelling"]
    assert therapist["heuristicCrossCheck"]["conditionName"] == "Knee Osteoarthritis"

    patient = triage_agent.build_patient_facing_analysis(therapist)
    assert patient["isProvisional"] is True
    assert "differentialDiagnoses" not in patient
    assert "confidenceScore" not in patient
    assert "clinician" in patient["guidance"]


# region rules


def test_bundled_rules_load_for_every_region():
    for region in region_rules.BODY_REGIONS:
        rules = region_rules.load_region_rules(region["id"])
        assert rules and rules["conditions"], region["id"]
    assert region_rules.load_region_rules("Tail") is None


def test_edited_module_overrides_bundled_rules(store, accounts):
    from cdss.services import admin

    bundled = region_rules.load_region_rules("knee")
    first_condition = bundled["conditions"][0]
    admin.create_module(
        store,
        accounts["ADMIN"],
        {
            "title": "Knee Quick Screen",
            "region": "knee",
            "status": "Active",
            "questions": [
                {
                    "id": "kq1",
                    "question": "Does the knee swell after activity?",
                    "answers": [{"value": "Yes"}, {"value": "No"}],
                    "conditionName": first_condition["name"],
                }
            ],
        },
    )
    rules = region_rules.rules_for_region(store, "Knee")
    assert rules["title"] == "Knee Quick Screen"
    assert [q["id"] for q in rules["conditions"][0]["questions"]] == ["kq1"]
    assert rules["conditions"][0]["recommended_tests"] == first_condition["recommended_tests"]
