from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from cdss.utils.time_utils import now_iso

logger = logging.getLogger(__name__)

REFINED_LABEL = "Clinician-Guided Diagnostic Outcome"
TEST_RESULTS = ("positive", "negative", "skipped")

_POSITIVE_RE = re.compile(r"positive[:\s]+([^.]+)", re.IGNORECASE)
_NEGATIVE_RE = re.compile(r"negative[:\s]+([^.]+)", re.IGNORECASE)
_OBS_PREFIX_RE = re.compile(r"^Check\s+(if|for)\s+", re.IGNORECASE)


def _names_overlap(a: str, b: str) -> bool:
    a, b = a.lower(), b.lower()
    return a in b or b in a


def _parse_test_text(text: str) -> Dict[str, str]:
    name, instruction = text, ""
    idx = text.find(":")
    if idx > 0:
        name = text[:idx].strip()
        instruction = text[idx + 1:].strip()
    pos = _POSITIVE_RE.search(instruction)
    neg = _NEGATIVE_RE.search(instruction)
    return {
        "name": name,
        "instruction": instruction,
        "positive": pos.group(1).strip() if pos else "",
        "negative": neg.group(1).strip() if neg else "",
    }


def extract_recommended_tests(rules: Optional[Dict[str, Any]], suspected: List[str]) -> List[Dict[str, Any]]:
    if not rules or not rules.get("conditions"):
        return []

    tests: List[Dict[str, Any]] = []
    by_name: Dict[str, Dict[str, Any]] = {}
    suspected = [s for s in (suspected or []) if s]

    for condition in rules["conditions"]:
        cname = condition["name"]
        # No suspected list means every condition is in play
        if suspected and not any(_names_overlap(cname, s) for s in suspected):
            continue

        for text in condition.get("recommended_tests") or []:
            parsed = _parse_test_text(text)
            key = parsed["name"].lower()
            existing = by_name.get(key)
            if existing is not None:
                if cname not in existing["associatedConditions"]:
                    existing["associatedConditions"].append(cname)
                continue
            test = {
                "id": f"test_{len(tests) + 1}",
                "name": parsed["name"],
                "instruction": parsed["instruction"] or "Perform test as per clinical protocol.",
                "positiveImplication": parsed["positive"] or f"Supports presence of {cname}",
                "negativeImplication": parsed["negative"] or f"Reduces likelihood of {cname}",
                "associatedConditions": [cname],
                "source": "JSON rules",
            }
            by_name[key] = test
            tests.append(test)

        for obs in condition.get("observations") or []:
            obs_name = _OBS_PREFIX_RE.sub("", obs).strip()
            key = obs_name.lower()
            if key in by_name:
                continue
            test = {
                "id": f"obs_{len(tests) + 1}",
                "name": f"Observe: {obs_name}",
                "instruction": obs,
                "positiveImplication": f"Finding present, supports {cname}",
                "negativeImplication": "Finding absent",
                "associatedConditions": [cname],
                "source": "JSON rules (observation)",
                "isObservation": True,
            }
            by_name[key] = test
            tests.append(test)

    return tests


def _fresh_condition_state(likelihood: int) -> Dict[str, Any]:
    return {"likelihood": likelihood, "supportingTests": [], "contraryTests": [], "status": "investigating"}


def initialize_guided_test_engine(
    *,
    assessment_id: str,
    therapist_id: str,
    region: str,
    temporal_diagnosis: Optional[str],
    suspected_conditions: Optional[List[str]] = None,
    differential_diagnoses: Optional[List[str]] = None,
    rules: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    all_suspected = [c for c in list(suspected_conditions or []) + list(differential_diagnoses or []) if c]
    condition_states: Dict[str, Any] = {}
    for index, name in enumerate(all_suspected):
        if name not in condition_states:
            condition_states[name] = _fresh_condition_state(70 if index == 0 else 50 - index * 5)

    return {
        "assessmentId": assessment_id,
        "therapistId": therapist_id,
        "region": region,
        "temporalDiagnosis": temporal_diagnosis,
        "suspectedConditions": all_suspected,
        "availableTests": extract_recommended_tests(rules, all_suspected),
        "completedTests": [],
        "currentTestIndex": 0,
        "conditionStates": condition_states,
        "isComplete": False,
        "completionReason": None,
        "startedAt": now_iso(),
    }


def _remaining(state: Dict[str, Any], completed: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    done = {ct["testId"] for ct in completed}
    return [t for t in state["availableTests"] if t["id"] not in done]


def get_current_test(state: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if state.get("isComplete"):
        return None
    remaining = _remaining(state, state["completedTests"])
    if not remaining:
        return None
    current = dict(remaining[0])
    current.update(
        {
            "testNumber": len(state["completedTests"]) + 1,
            "totalTests": len(state["availableTests"]),
            "remainingTests": len(remaining),
        }
    )
    return current


def find_test(state: Dict[str, Any], test_id: Optional[str] = None, test_name: Optional[str] = None) -> Optional[Dict[str, Any]]:
    for t in state.get("availableTests") or []:
        if test_id and t["id"] == test_id:
            return t
    if test_name:
        for t in state.get("availableTests") or []:
            if t["name"].lower() == test_name.lower():
                return t
    return None


def record_test_result(state: Dict[str, Any], test_id: str, result: str, notes: str = "") -> Dict[str, Any]:
    test = find_test(state, test_id=test_id)
    if test is None:
        logger.warning("guided test not found: %s", test_id)
        return state
    if any(ct["testId"] == test["id"] for ct in state["completedTests"]):
        logger.warning("guided test already recorded: %s", test_id)
        return state

    completed = list(state["completedTests"]) + [
        {
            "testId": test["id"],
            "testName": test["name"],
            "result": result,
            "notes": notes,
            "timestamp": now_iso(),
            "associatedConditions": list(test["associatedConditions"]),
        }
    ]

    condition_states = dict(state["conditionStates"])
    for name in test["associatedConditions"]:
        cs = dict(condition_states.get(name) or _fresh_condition_state(50))
        if result == "positive":
            cs["supportingTests"] = list(cs["supportingTests"]) + [test["name"]]
            cs["likelihood"] = min(100, cs["likelihood"] + 15)
        else:
            cs["contraryTests"] = list(cs["contraryTests"]) + [test["name"]]
            cs["likelihood"] = max(0, cs["likelihood"] - 20)
        if cs["likelihood"] < 20 and len(cs["contraryTests"]) >= 2:
            cs["status"] = "ruled_out"
        if cs["likelihood"] >= 85 and len(cs["supportingTests"]) >= 2:
            cs["status"] = "confirmed"
        condition_states[name] = cs

    is_complete = False
    reason = None
    if any(cs["status"] == "confirmed" for cs in condition_states.values()):
        is_complete, reason = True, "condition_confirmed"
    active = [n for n, cs in condition_states.items() if cs["status"] != "ruled_out"]
    if len(active) == 1 and len(completed) >= 2:
        is_complete, reason = True, "single_condition_remaining"
    if not _remaining(state, completed):
        is_complete, reason = True, "all_tests_completed"

    new_state = dict(state)
    new_state.update(
        {
            "completedTests": completed,
            "conditionStates": condition_states,
            "isComplete": is_complete,
            "completionReason": reason,
        }
    )
    return new_state


def record_adhoc_result(state: Dict[str, Any], test_name: str, result: str, notes: str = "") -> Dict[str, Any]:
    """Append a result for a test outside the recommended list; likelihoods are untouched."""
    new_state = dict(state)
    new_state["completedTests"] = list(state["completedTests"]) + [
        {
            "testId": None,
            "testName": test_name,
            "result": result,
            "notes": notes,
            "timestamp": now_iso(),
            "associatedConditions": [],
        }
    ]
    return new_state


def skip_test(state: Dict[str, Any], test_id: str, reason: str = "Skipped by therapist") -> Dict[str, Any]:
    test = find_test(state, test_id=test_id)
    if test is None:
        return state
    completed = list(state["completedTests"]) + [
        {
            "testId": test["id"],
            "testName": test["name"],
            "result": "skipped",
            "notes": reason,
            "timestamp": now_iso(),
            "associatedConditions": list(test["associatedConditions"]),
        }
    ]
    done = not _remaining(state, completed)
    new_state = dict(state)
    new_state.update(
        {
            "completedTests": completed,
            "isComplete": done,
            "completionReason": "all_tests_completed" if done else None,
        }
    )
    return new_state


def complete_guided_test(state: Dict[str, Any], reason: str = "Manually completed by therapist") -> Dict[str, Any]:
    new_state = dict(state)
    new_state.update({"isComplete": True, "completionReason": reason, "completedAt": now_iso()})
    return new_state


def generate_refined_diagnosis(state: Dict[str, Any]) -> Dict[str, Any]:
    ranked = [
        {
            "name": name,
            "likelihood": cs["likelihood"],
            "status": cs["status"],
            "supportingTests": cs["supportingTests"],
            "contraryTests": cs["contraryTests"],
        }
        for name, cs in state["conditionStates"].items()
    ]
    ranked.sort(key=lambda c: c["likelihood"], reverse=True)

    confirmed = [c for c in ranked if c["status"] == "confirmed"]
    ruled_out = [c for c in ranked if c["status"] == "ruled_out"]
    investigating = [c for c in ranked if c["status"] == "investigating"]
    if confirmed:
        final = confirmed[0]
    elif investigating:
        final = investigating[0]
    else:
        final = ranked[0] if ranked else None
    final_name = final["name"] if final else None

    tests = state["completedTests"]
    return {
        "label": REFINED_LABEL,
        "finalSuspectedCondition": final,
        "confirmedConditions": confirmed,
        "ruledOutConditions": ruled_out,
        "remainingDifferentials": [c for c in investigating if c["name"] != final_name],
        "testsPerformed": [t for t in tests if t["result"] != "skipped"],
        "testsSkipped": [t for t in tests if t["result"] == "skipped"],
        "completionReason": state.get("completionReason"),
        "startedAt": state.get("startedAt"),
        "completedAt": state.get("completedAt") or now_iso(),
        "supportingEvidence": [
            {"test": t["testName"], "result": "Positive", "timestamp": t["timestamp"]}
            for t in tests
            if t["result"] == "positive"
        ],
        "contraryEvidence": [
            {"test": t["testName"], "result": "Negative", "timestamp": t["timestamp"]}
            for t in tests
            if t["result"] == "negative"
        ],
    }


def prepare_for_persistence(state: Dict[str, Any], therapist_id: str) -> Dict[str, Any]:
    refined = generate_refined_diagnosis(state)
    final = refined["finalSuspectedCondition"]
    return {
        "therapistId": therapist_id,
        "performedAt": state.get("startedAt"),
        "completedAt": refined["completedAt"],
        "tests": [
            {"testName": t["testName"], "result": t["result"], "notes": t["notes"], "timestamp": t["timestamp"]}
            for t in state["completedTests"]
        ],
        "refinedDiagnosis": {
            "label": REFINED_LABEL,
            "finalSuspectedCondition": final["name"] if final else None,
            "confirmedConditions": [c["name"] for c in refined["confirmedConditions"]],
            "ruledOutConditions": [c["name"] for c in refined["ruledOutConditions"]],
            "remainingDifferentials": [c["name"] for c in refined["remainingDifferentials"]],
            "completionReason": refined["completionReason"],
            "supportingEvidence": refined["supportingEvidence"],
            "contraryEvidence": refined["contraryEvidence"],
        },
        "isLocked": True,
    }
