from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from cdss.utils.time_utils import now_iso

ENGINE_VERSION = "1.0.0"

_SEVERITY_LEVELS = {
    "mild": {"minScore": 0.3, "maxScore": 0.5},
    "moderate": {"minScore": 0.5, "maxScore": 0.7},
    "severe": {"minScore": 0.7, "maxScore": 1.0},
}

CONDITION_PATTERNS: Dict[str, Dict[str, Any]] = {
    "lumbar_disc_herniation": {
        "code": "FB83.1",
        "name": "Lumbar Disc Herniation",
        "category": "lumbar_spine",
        "expectedPatterns": [
            {"symptom": "pain_location", "expected": "lower_back", "weight": 0.8},
            {"symptom": "radiation", "expected": "leg", "weight": 0.9},
            {"symptom": "pain_character", "expected": "sharp", "weight": 0.6},
            {"symptom": "aggravating", "expected": ["sitting", "bending_forward"], "weight": 0.7},
            {"symptom": "neurological", "expected": ["numbness", "tingling"], "weight": 0.85},
            {"symptom": "positive_slr", "expected": True, "weight": 0.9},
        ],
        "severityIndicators": _SEVERITY_LEVELS,
    },
    "rotator_cuff_tear": {
        "code": "FB54.0",
        "name": "Rotator Cuff Tear",
        "category": "shoulder",
        "expectedPatterns": [
            {"symptom": "pain_location", "expected": "shoulder", "weight": 0.9},
            {"symptom": "pain_character", "expected": ["deep", "aching"], "weight": 0.6},
            {"symptom": "weakness", "expected": "arm_elevation", "weight": 0.85},
            {"symptom": "night_pain", "expected": True, "weight": 0.7},
            {"symptom": "mechanism", "expected": ["trauma", "repetitive_overhead"], "weight": 0.6},
            {"symptom": "age_group", "expected": "over_40", "weight": 0.4},
        ],
        "severityIndicators": _SEVERITY_LEVELS,
    },
    "knee_osteoarthritis": {
        "code": "FA00.0",
        "name": "Knee Osteoarthritis",
        "category": "knee",
        "expectedPatterns": [
            {"symptom": "pain_location", "expected": "knee", "weight": 0.9},
            {"symptom": "pain_character", "expected": "aching", "weight": 0.5},
            {"symptom": "stiffness", "expected": "morning_stiffness_short", "weight": 0.8},
            {"symptom": "crepitus", "expected": True, "weight": 0.7},
            {"symptom": "aggravating", "expected": ["stairs", "prolonged_walking"], "weight": 0.7},
            {"symptom": "swelling", "expected": "intermittent", "weight": 0.6},
            {"symptom": "age_group", "expected": "over_50", "weight": 0.5},
        ],
        "severityIndicators": _SEVERITY_LEVELS,
    },
}

_BASE_RECOMMENDATIONS = [
    "Follow up with a healthcare provider for clinical examination",
    "Avoid activities that aggravate symptoms",
]

_SEVERITY_RECOMMENDATIONS = {
    "mild": ["Consider conservative management", "Monitor symptoms for changes"],
    "moderate": [
        "Clinical evaluation recommended within 1-2 weeks",
        "Consider imaging studies if symptoms persist",
    ],
    "severe": [
        "Urgent clinical evaluation recommended",
        "Imaging studies likely warranted",
        "Consider specialist referral",
    ],
}

_TRUTHY = ("yes", "true", "y", "1")
_FALSY = ("no", "false", "n", "0")


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUTHY:
            return True
        if text in _FALSY:
            return False
    return None


def calculate_similarity(response: Any, expected: Any) -> float:
    if isinstance(expected, bool):
        return 1.0 if _as_bool(response) is expected else 0.0
    if response == expected:
        return 1.0
    if isinstance(expected, list):
        if isinstance(response, list):
            matches = len([r for r in response if r in expected])
            return matches / max(len(expected), len(response))
        return 1.0 if response in expected else 0.0
    if isinstance(expected, str) and isinstance(response, str):
        exp = expected.lower()
        resp = response.lower()
        if resp and (exp in resp or resp in exp):
            return 0.8
    return 0.0


def calculate_condition_score(
    symptoms: List[Dict[str, Any]], condition: Dict[str, Any]
) -> Tuple[float, List[Dict[str, Any]]]:
    symptom_map: Dict[str, Any] = {}
    for s in symptoms or []:
        key = s.get("questionCategory") or s.get("questionId")
        if key:
            symptom_map[key] = s.get("response")

    total_weight = 0.0
    weighted_score = 0.0
    matched: List[Dict[str, Any]] = []
    for pattern in condition.get("expectedPatterns") or []:
        if pattern["symptom"] not in symptom_map:
            continue
        similarity = calculate_similarity(symptom_map[pattern["symptom"]], pattern["expected"])
        weighted_score += similarity * pattern["weight"]
        total_weight += pattern["weight"]
        if similarity > 0:
            matched.append({"patternId": pattern["symptom"], "matchScore": similarity})

    confidence = weighted_score / total_weight if total_weight > 0 else 0.0
    return min(1.0, max(0.0, confidence)), matched


def determine_severity(confidence: float, levels: Optional[Dict[str, Dict[str, float]]]) -> str:
    if not levels:
        return "unknown"
    for level, bounds in levels.items():
        if bounds["minScore"] <= confidence <= bounds["maxScore"]:
            return level
    return "unknown"


def generate_recommendations(condition_code: str, severity: str) -> List[str]:
    return list(_BASE_RECOMMENDATIONS) + list(_SEVERITY_RECOMMENDATIONS.get(severity, []))


def calculate_temporal_diagnosis(
    symptoms: List[Dict[str, Any]],
    min_confidence: float = 0.2,
    max_differentials: int = 3,
) -> Dict[str, Any]:
    if not symptoms:
        return {
            "primaryDiagnosis": None,
            "differentialDiagnoses": [],
            "calculatedAt": now_iso(),
            "engineVersion": ENGINE_VERSION,
            "error": "No symptoms provided",
        }

    results: List[Dict[str, Any]] = []
    for condition in CONDITION_PATTERNS.values():
        confidence, matched = calculate_condition_score(symptoms, condition)
        if confidence < min_confidence:
            continue
        severity = determine_severity(confidence, condition.get("severityIndicators"))
        results.append(
            {
                "conditionCode": condition["code"],
                "conditionName": condition["name"],
                "confidence": round(confidence, 3),
                "severity": severity,
                "matchedPatterns": matched,
                "recommendations": generate_recommendations(condition["code"], severity),
            }
        )

    results.sort(key=lambda r: r["confidence"], reverse=True)
    return {
        "primaryDiagnosis": results[0] if results else None,
        "differentialDiagnoses": results[1 : max_differentials + 1],
        "calculatedAt": now_iso(),
        "engineVersion": ENGINE_VERSION,
    }


def validate_symptoms(symptoms: Any) -> Dict[str, Any]:
    if not isinstance(symptoms, list):
        return {"valid": False, "errors": ["Symptoms must be an array"]}
    errors: List[str] = []
    for idx, symptom in enumerate(symptoms):
        if not isinstance(symptom, dict):
            errors.append(f"Symptom at index {idx} must be an object")
            continue
        if not symptom.get("questionId"):
            errors.append(f"Symptom at index {idx} missing questionId")
        if "response" not in symptom:
            errors.append(f"Symptom at index {idx} missing response")
    return {"valid": not errors, "errors": errors}


def get_condition_categories() -> List[str]:
    seen: List[str] = []
    for condition in CONDITION_PATTERNS.values():
        if condition["category"] not in seen:
            seen.append(condition["category"])
    return seen
