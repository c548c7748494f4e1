from __future__ import annotations

import logging
from typing import Any, Dict

from cdss.services.errors import ServiceError, not_found
from cdss.store.schemas import DiagnosisSession
from cdss.store.sqlite_store import SQLiteStore
from cdss.tools import guided_test_engine as engine
from cdss.tools.region_rules import rules_for_region
from cdss.utils.time_utils import now_iso

logger = logging.getLogger(__name__)


def _load(store: SQLiteStore, session_id: str) -> DiagnosisSession:
    session = store.get_session(session_id)
    if session is None:
        raise not_found("Session")
    return session


def _ensure_state(store: SQLiteStore, session: DiagnosisSession, therapist_id: str) -> Dict[str, Any]:
    if session.guided_test_state:
        return session.guided_test_state
    analysis = session.ai_analysis or {}
    rules = rules_for_region(store, session.body_region or "")
    if rules is None:
        logger.warning("no rules for guided tests session=%s region=%s", session.id, session.body_region)
    temporal = analysis.get("temporalDiagnosis")
    return engine.initialize_guided_test_engine(
        assessment_id=session.id,
        therapist_id=therapist_id,
        region=session.body_region or "",
        temporal_diagnosis=temporal,
        suspected_conditions=[temporal] if temporal else [],
        differential_diagnoses=list(analysis.get("differentialDiagnoses") or []),
        rules=rules,
    )


def get_guided_test(store: SQLiteStore, session_id: str, therapist_id: str) -> Dict[str, Any]:
    session = _load(store, session_id)
    if session.is_locked:
        return {
            "success": True,
            "isLocked": True,
            "guidedTestResults": session.guided_test_results,
            "message": "Guided tests already completed for this assessment.",
        }

    fresh = not session.guided_test_state
    state = _ensure_state(store, session, therapist_id)
    if fresh:
        session.guided_test_state = state
        session.updated_at = now_iso()
        store.save_session(session)

    patient = store.get_user(session.patient_id)
    analysis = session.ai_analysis or {}
    return {
        "success": True,
        "assessmentId": session.id,
        "patientName": patient.full_name if patient else "Unknown Patient",
        "region": session.body_region,
        "temporalDiagnosis": analysis.get("temporalDiagnosis"),
        "differentialDiagnoses": analysis.get("differentialDiagnoses") or [],
        "recommendedTests": state["availableTests"],
        "currentTest": engine.get_current_test(state),
        "completedTests": state["completedTests"],
        "conditionStates": state["conditionStates"],
        "guidedTestResults": session.guided_test_results,
        "isLocked": False,
    }


def record_result(store: SQLiteStore, session_id: str, payload: Dict[str, Any], therapist_id: str) -> Dict[str, Any]:
    test_id = payload.get("testId")
    test_name = payload.get("testName")
    result = payload.get("result")
    notes = str(payload.get("notes") or "")
    if not (test_name or test_id) or not result:
        raise ServiceError("testName and result are required", 400)
    if result not in engine.TEST_RESULTS:
        raise ServiceError("result must be positive, negative, or skipped", 400)

    session = _load(store, session_id)
    if session.is_locked:
        raise ServiceError("Guided tests are locked for this assessment", 403)

    state = _ensure_state(store, session, therapist_id)
    test = engine.find_test(state, test_id=test_id, test_name=test_name)
    if test is not None and any(ct["testId"] == test["id"] for ct in state["completedTests"]):
        raise ServiceError("Test already recorded", 409)
    if test is None:
        state = engine.record_adhoc_result(state, str(test_name or test_id), result, notes)
    elif result == "skipped":
        state = engine.skip_test(state, test["id"], notes or "Skipped by therapist")
    else:
        state = engine.record_test_result(state, test["id"], result, notes)

    session.guided_test_state = state
    session.guided_test_results = {
        "therapistId": therapist_id,
        "performedAt": state.get("startedAt"),
        "tests": [
            {"testName": t["testName"], "result": t["result"], "notes": t["notes"], "timestamp": t["timestamp"]}
            for t in state["completedTests"]
        ],
        "refinedDiagnosis": None,
        "isLocked": False,
    }
    session.updated_at = now_iso()
    store.save_session(session)
    logger.info("guided test recorded session=%s test=%s result=%s", session.id, test_name or test_id, result)
    return {
        "success": True,
        "message": "Test result recorded",
        "testCount": len(state["completedTests"]),
        "currentTest": engine.get_current_test(state),
        "isComplete": state["isComplete"],
        "completionReason": state["completionReason"],
    }


def complete(store: SQLiteStore, session_id: str, payload: Dict[str, Any], therapist_id: str) -> Dict[str, Any]:
    if payload.get("action") != "complete":
        raise ServiceError('Invalid action. Use "complete" to finalize.', 400)

    session = _load(store, session_id)
    if session.is_locked:
        raise ServiceError("Guided tests already completed", 403)
    state = session.guided_test_state
    if not state or not state.get("completedTests"):
        raise ServiceError("No tests performed. Cannot complete.", 400)

    state = engine.complete_guided_test(state, state.get("completionReason") or "Manually completed by therapist")
    results = engine.prepare_for_persistence(state, therapist_id)
    override = payload.get("refinedDiagnosis")
    if isinstance(override, dict):
        results["refinedDiagnosis"].update(override)

    now = now_iso()
    session.guided_test_state = state
    session.guided_test_results = results
    if session.status == "assigned":
        session.status = "completed"
        session.completed_at = now
    session.updated_at = now
    store.save_session(session)
    logger.info(
        "guided tests locked session=%s final=%s",
        session.id,
        results["refinedDiagnosis"].get("finalSuspectedCondition"),
    )
    return {
        "success": True,
        "message": "Guided test flow completed",
        "refinedDiagnosis": results["refinedDiagnosis"],
        "isLocked": True,
    }
