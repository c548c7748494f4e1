from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from openai import OpenAI

from cdss import config
from cdss.tools.heuristic import calculate_temporal_diagnosis
from cdss.utils.json_utils import safe_json_loads
from cdss.utils.time_utils import now_iso

logger = logging.getLogger(__name__)

RISK_LEVELS = ("Low", "Moderate", "Urgent")

SYSTEM_PROMPT = (
    "You are a diagnostic engine using the Weighted Matching Paradigm. "
    "Compare symptoms against clinical heuristics. Output JSON only. "
    "Do not include internal question IDs or tags in your reasoning."
)

USER_PROMPT_TEMPLATE = """You are a diagnostic engine using the Weighted Matching Paradigm.
Compare the following symptoms for the {region} region against clinical heuristics.

Symptoms:
{symptoms}

Instructions:
1. Analyze the symptoms.
2. Provide a temporal diagnosis.
3. For "reasoning", provide clear clinical indicators found in the symptoms.
4. Do NOT include internal tags, question IDs or technical codes (e.g. "(lumbar_q_redflag)") in the reasoning. Use natural language only.

Output JSON only:
{{
  "temporalDiagnosis": "String (e.g., Lumbar Disc Herniation)",
  "confidenceScore": "Number (0-100)",
  "riskLevel": "String (Low, Moderate, Urgent)",
  "reasoning": ["String (Key indicator 1)", "String (Key indicator 2)"]
}}"""

# Leaked question ids such as "(lumbar_q1, lumbar_q2)"
_TAG_RE = re.compile(r"\((?:[a-z0-9_]+(?:,\s*)?)+\)", re.IGNORECASE)

_CLIENT: Any = None
_API_KEY: str = config.MISTRAL_API_KEY
_MODEL: str = config.AI_MODEL


class AiAnalysisError(RuntimeError):
    def __init__(self, message: str = "AI analysis failed") -> None:
        super().__init__(message)


def configure(*, client: Any = None, api_key: Optional[str] = None, model: Optional[str] = None) -> None:
    """Swap the chat client or credentials. A client passed here is used even without a key."""
    global _CLIENT, _API_KEY, _MODEL
    _CLIENT = client
    if api_key is not None:
        _API_KEY = api_key
    if model:
        _MODEL = model


def _get_client() -> Any:
    global _CLIENT
    if _CLIENT is not None:
        return _CLIENT
    if not _API_KEY:
        return None
    _CLIENT = OpenAI(api_key=_API_KEY, base_url=config.AI_BASE_URL, timeout=config.AI_TIMEOUT_SECONDS)
    return _CLIENT


def _normalize_symptoms(
    responses: Optional[Dict[str, Any]], symptom_data: Optional[List[Dict[str, Any]]]
) -> List[Dict[str, Any]]:
    if symptom_data:
        return [s for s in symptom_data if isinstance(s, dict)]
    return [{"question": q, "answer": a} for q, a in (responses or {}).items()]


def _symptom_text(symptoms: List[Dict[str, Any]]) -> str:
    blocks = []
    for s in symptoms:
        answer = s.get("answer", s.get("response"))
        blocks.append(f"Question: {s.get('question')}\nAnswer: {answer}")
    return "\n\n".join(blocks)


def strip_tags(text: Any) -> str:
    return _TAG_RE.sub("", str(text or "")).strip()


def normalize_risk_level(value: Any) -> str:
    raw = str(value or "").strip().lower()
    if raw in ("urgent", "high", "critical", "emergency"):
        return "Urgent"
    if raw in ("moderate", "medium"):
        return "Moderate"
    return "Low"


def _clamp_confidence(value: Any) -> int:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0
    return int(round(max(0.0, min(100.0, score))))


def _risk_from(confidence: int, red_flags: Optional[List[Any]]) -> str:
    if red_flags:
        return "Urgent"
    if confidence >= 60:
        return "Moderate"
    return "Low"


def _local_analysis(
    region: str,
    symptoms: List[Dict[str, Any]],
    red_flags: Optional[List[Any]],
    condition_analysis: Optional[List[Dict[str, Any]]],
) -> Dict[str, Any]:
    ranked = [c for c in (condition_analysis or []) if isinstance(c, dict) and c.get("name")]
    reasoning: List[str] = []
    differentials: List[str] = []
    diagnosis = None
    confidence = 0

    if ranked:
        top = ranked[0]
        diagnosis = top["name"]
        confidence = _clamp_confidence(top.get("likelihood"))
        differentials = [c["name"] for c in ranked[1:4]]
        for reason in (top.get("confirmationReasons") or [])[:4]:
            reasoning.append(strip_tags(f"{reason.get('question')}: {reason.get('answer')}"))
    else:
        heuristic_input = [
            {
                "questionId": s.get("questionId") or s.get("question"),
                "questionCategory": s.get("questionCategory"),
                "response": s.get("response", s.get("answer")),
            }
            for s in symptoms
        ]
        temporal = calculate_temporal_diagnosis(heuristic_input)
        primary = temporal.get("primaryDiagnosis")
        if primary:
            diagnosis = primary["conditionName"]
            confidence = _clamp_confidence(primary["confidence"] * 100)
            differentials = [d["conditionName"] for d in temporal.get("differentialDiagnoses") or []]
            for m in primary.get("matchedPatterns") or []:
                reasoning.append(f"Reported {str(m.get('patternId')).replace('_', ' ')} consistent with {diagnosis}")

    if not diagnosis:
        diagnosis = f"Unspecified {region.lower()} pain"
        confidence = 20
        reasoning.append("Insufficient symptom pattern for a specific match")

    for flag in red_flags or []:
        text = flag.get("redFlagText") if isinstance(flag, dict) else flag
        if text:
            reasoning.append(strip_tags(text))

    return {
        "temporalDiagnosis": diagnosis,
        "confidenceScore": confidence,
        "riskLevel": _risk_from(confidence, red_flags),
        "reasoning": [r for r in reasoning if r],
        "differentialDiagnoses": differentials,
        "source": "local",
    }


def _remote_analysis(client: Any, region: str, symptoms: List[Dict[str, Any]]) -> Dict[str, Any]:
    prompt = USER_PROMPT_TEMPLATE.format(region=region, symptoms=_symptom_text(symptoms))
    response = client.chat.completions.create(
        model=_MODEL,
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        temperature=0.0,
        response_format={"type": "json_object"},
    )
    raw = response.choices[0].message.content or ""
    parsed = safe_json_loads(raw)
    reasoning = parsed.get("reasoning") or []
    if not isinstance(reasoning, list):
        reasoning = [reasoning]
    analysis = dict(parsed)
    analysis.update(
        {
            "temporalDiagnosis": str(parsed.get("temporalDiagnosis") or "").strip() or None,
            "confidenceScore": _clamp_confidence(parsed.get("confidenceScore")),
            "riskLevel": normalize_risk_level(parsed.get("riskLevel")),
            "reasoning": [r for r in (strip_tags(item) for item in reasoning) if r],
            "source": "ai",
        }
    )
    return analysis


def get_weighted_ai_analysis(
    selected_region: Optional[str] = "Unknown",
    responses: Optional[Dict[str, Any]] = None,
    symptom_data: Optional[List[Dict[str, Any]]] = None,
    *,
    red_flags: Optional[List[Any]] = None,
    condition_analysis: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    region = selected_region or "Unknown"
    symptoms = _normalize_symptoms(responses, symptom_data)
    client = _get_client()

    if client is None:
        analysis = _local_analysis(region, symptoms, red_flags, condition_analysis)
        logger.info(
            "local analysis region=%s diagnosis=%s confidence=%s",
            region,
            analysis["temporalDiagnosis"],
            analysis["confidenceScore"],
        )
        return {"success": True, "analysis": analysis}

    try:
        analysis = _remote_analysis(client, region, symptoms)
    except Exception as exc:
        logger.error("AI agent error region=%s: %s", region, exc)
        raise AiAnalysisError() from exc

    logger.info(
        "AI analysis region=%s diagnosis=%s risk=%s",
        region,
        analysis["temporalDiagnosis"],
        analysis["riskLevel"],
    )
    return {"success": True, "analysis": analysis}


get_ai_preliminary_analysis = get_weighted_ai_analysis


def convert_to_therapist_facing_analysis(
    analysis: Dict[str, Any],
    symptom_data: Optional[List[Dict[str, Any]]] = None,
    red_flags: Optional[List[Any]] = None,
) -> Dict[str, Any]:
    analysis = analysis or {}
    heuristic_input = [
        {
            "questionId": s.get("questionId") or s.get("question"),
            "questionCategory": s.get("questionCategory"),
            "response": s.get("response", s.get("answer")),
        }
        for s in (symptom_data or [])
        if isinstance(s, dict)
    ]
    temporal = calculate_temporal_diagnosis(heuristic_input) if heuristic_input else {}
    heuristic_primary = temporal.get("primaryDiagnosis")

    differentials = analysis.get("differentialDiagnoses")
    if not differentials:
        differentials = [d["conditionName"] for d in temporal.get("differentialDiagnoses") or []]

    flags = []
    for flag in red_flags or []:
        text = flag.get("redFlagText") if isinstance(flag, dict) else flag
        if text:
            flags.append(str(text))

    reasoning = analysis.get("reasoning") or []
    return {
        "temporalDiagnosis": analysis.get("temporalDiagnosis"),
        "differentialDiagnoses": [str(d) for d in differentials if d],
        "confidenceScore": _clamp_confidence(analysis.get("confidenceScore")),
        "riskLevel": normalize_risk_level(analysis.get("riskLevel")),
        "clinicalIndicators": [strip_tags(r) for r in reasoning if strip_tags(r)],
        "redFlags": flags,
        "heuristicCrossCheck": {
            "conditionName": heuristic_primary["conditionName"],
            "conditionCode": heuristic_primary["conditionCode"],
            "confidence": heuristic_primary["confidence"],
        }
        if heuristic_primary
        else None,
        "source": analysis.get("source") or "ai",
        "generatedAt": now_iso(),
    }


def build_patient_facing_analysis(therapist: Dict[str, Any]) -> Dict[str, Any]:
    """Summary shown on the patient dashboard; never exposes differentials or scores."""
    risk = therapist.get("riskLevel") or "Low"
    if risk == "Urgent":
        guidance = "Some answers need prompt attention. A clinician will contact you as soon as possible."
    elif risk == "Moderate":
        guidance = "A clinician will review your assessment and follow up with next steps."
    else:
        guidance = "Your answers suggest a low-risk pattern. A clinician will still review them."
    return {
        "summary": therapist.get("temporalDiagnosis") or "Assessment received",
        "riskLevel": risk,
        "guidance": guidance,
        "disclaimer": "This is a provisional, automated summary and not a diagnosis.",
        "isProvisional": True,
    }
