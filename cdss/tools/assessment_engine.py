from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional

from cdss.utils.time_utils import now_iso

logger = logging.getLogger(__name__)


def _empty_effects() -> Dict[str, Any]:
    return {"rule_out": [], "increase_likelihood": [], "decrease_likelihood": []}


def _match_condition(states: Dict[str, Any], name: str) -> Optional[str]:
    needle = str(name or "").lower()
    if not needle:
        return None
    for cn in states.keys():
        low = cn.lower()
        if needle in low or low in needle:
            return cn
    return None


def initialize_engine(rules: Dict[str, Any]) -> Dict[str, Any]:
    if not rules or not isinstance(rules.get("conditions"), list):
        raise ValueError("Invalid rules JSON: missing conditions array")

    condition_states: Dict[str, Any] = {}
    for condition in rules["conditions"]:
        condition_states[condition["name"]] = {
            "active": True,
            "likelihood": 50,
            "ruleOutReasons": [],
            "confirmationReasons": [],
            "questionCount": len(condition.get("questions") or []),
        }

    return {
        "region": rules.get("region"),
        "title": rules.get("title"),
        "conditions": rules["conditions"],
        "currentConditionIndex": 0,
        "currentQuestionIndex": 0,
        "askedQuestions": [],
        "conditionStates": condition_states,
        "redFlags": [],
        "isComplete": False,
        "completionReason": None,
        "startedAt": now_iso(),
    }


def _total_questions(state: Dict[str, Any]) -> int:
    return sum(len(c.get("questions") or []) for c in state["conditions"])


def get_current_question(state: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if state.get("isComplete"):
        return None
    asked = {aq["questionId"] for aq in state["askedQuestions"]}
    conditions = state["conditions"]
    start_ci = state["currentConditionIndex"]
    for ci in range(start_ci, len(conditions)):
        condition = conditions[ci]
        start_qi = state["currentQuestionIndex"] if ci == start_ci else 0
        questions = condition.get("questions") or []
        for qi in range(start_qi, len(questions)):
            q = questions[qi]
            if q["id"] in asked:
                continue
            return {
                "id": q["id"],
                "question": q.get("questionText") or q.get("question"),
                "answers": q.get("options") or q.get("answers") or [],
                "category": q.get("category"),
                "inputType": q.get("inputType"),
                "metadata": q.get("metadata"),
                "conditionName": condition["name"],
                "conditionIndex": ci,
                "questionIndex": qi,
                "totalQuestions": _total_questions(state),
                "answeredCount": len(state["askedQuestions"]),
            }
    return None


def _find_question(state: Dict[str, Any], question_id: str) -> Optional[Dict[str, Any]]:
    for ci, condition in enumerate(state["conditions"]):
        for qi, q in enumerate(condition.get("questions") or []):
            if q["id"] == question_id:
                return {
                    "question": q,
                    "conditionName": condition["name"],
                    "conditionIndex": ci,
                    "questionIndex": qi,
                }
    return None


def process_answer(state: Dict[str, Any], question_id: str, answer_value: str) -> Dict[str, Any]:
    found = _find_question(state, question_id)
    if not found:
        logger.warning("question not found: %s", question_id)
        return state

    q = found["question"]
    answer_text = str(answer_value or "")
    answer_obj = None
    for a in q.get("answers") or q.get("options") or []:
        value = str(a.get("value") if isinstance(a, dict) else a)
        if value == answer_text or value.lower() == answer_text.lower():
            answer_obj = a if isinstance(a, dict) else None
            break
    effects = _empty_effects()
    effects.update((answer_obj or {}).get("effects") or {})

    new_state = copy.deepcopy(state)
    question_text = q.get("questionText") or q.get("question")
    new_state["askedQuestions"].append(
        {
            "questionId": q["id"],
            "question": question_text,
            "category": q.get("category"),
            "conditionName": found["conditionName"],
            "answer": answer_text,
            "effects": effects,
            "timestamp": now_iso(),
        }
    )

    states = new_state["conditionStates"]
    reason = {"question": question_text, "answer": answer_text}
    for name in effects.get("rule_out") or []:
        cn = _match_condition(states, name)
        if cn:
            states[cn]["active"] = True
            states[cn]["ruleOutReasons"].append(dict(reason))
            states[cn]["likelihood"] = min(100, states[cn]["likelihood"] + 10)
    for name in effects.get("increase_likelihood") or []:
        cn = _match_condition(states, name)
        if cn:
            states[cn]["confirmationReasons"].append(dict(reason))
            states[cn]["likelihood"] = min(100, states[cn]["likelihood"] + 15)
    for name in effects.get("decrease_likelihood") or []:
        cn = _match_condition(states, name)
        if cn:
            states[cn]["likelihood"] = max(0, states[cn]["likelihood"] - 15)

    if effects.get("red_flag"):
        new_state["redFlags"].append(
            {
                "question": question_text,
                "answer": answer_text,
                "redFlagText": effects.get("red_flag_text"),
                "timestamp": now_iso(),
            }
        )

    ci = found["conditionIndex"]
    qi = found["questionIndex"] + 1
    if qi >= len(new_state["conditions"][ci].get("questions") or []):
        ci += 1
        qi = 0
    new_state["currentConditionIndex"] = ci
    new_state["currentQuestionIndex"] = qi
    if ci >= len(new_state["conditions"]):
        new_state["isComplete"] = True
        new_state["completionReason"] = "all_questions_answered"
    else:
        new_state["isComplete"] = False
        new_state["completionReason"] = None
    return new_state


def previous_question(state: Dict[str, Any]) -> Dict[str, Any]:
    if not state or not state.get("askedQuestions"):
        return state
    remaining = state["askedQuestions"][:-1]
    new_state = initialize_engine(
        {"region": state.get("region"), "title": state.get("title"), "conditions": state["conditions"]}
    )
    new_state["startedAt"] = state.get("startedAt") or new_state["startedAt"]
    for aq in remaining:
        new_state = process_answer(new_state, aq["questionId"], aq["answer"])
    return new_state


def complete_assessment(state: Dict[str, Any]) -> Dict[str, Any]:
    ranked = [
        {
            "name": name,
            "likelihood": cs["likelihood"],
            "ruleOutReasons": cs["ruleOutReasons"],
            "confirmationReasons": cs["confirmationReasons"],
        }
        for name, cs in state["conditionStates"].items()
        if cs["likelihood"] > 0
    ]
    ranked.sort(key=lambda c: c["likelihood"], reverse=True)
    done = dict(state)
    done.update(
        {
            "isComplete": True,
            "completionReason": state.get("completionReason") or "manually_completed",
            "completedAt": now_iso(),
            "summary": {
                "totalQuestionsAnswered": len(state["askedQuestions"]),
                "redFlagsDetected": len(state["redFlags"]),
                "rankedConditions": ranked,
                "primarySuspicion": ranked[0] if ranked else None,
                "differentialDiagnoses": ranked[1:4],
            },
        }
    )
    return done


def get_assessment_summary(state: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "region": state.get("region"),
        "title": state.get("title"),
        "questionsAnswered": [
            {"question": aq["question"], "answer": aq["answer"], "category": aq.get("category")}
            for aq in state["askedQuestions"]
        ],
        "redFlagsDetected": state["redFlags"],
        "startedAt": state.get("startedAt"),
        "answeredCount": len(state["askedQuestions"]),
    }


def prepare_for_ai_analysis(state: Dict[str, Any], biodata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    done = complete_assessment(state)
    symptom_data: List[Dict[str, Any]] = [
        {
            "questionId": aq["questionId"],
            "question": aq["question"],
            "response": aq["answer"],
            "questionCategory": aq.get("category"),
            "conditionContext": aq.get("conditionName"),
            "effects": aq.get("effects"),
        }
        for aq in done["askedQuestions"]
    ]
    return {
        "region": done.get("region"),
        "biodata": biodata,
        "symptomData": symptom_data,
        "redFlags": done["redFlags"],
        "conditionAnalysis": done["summary"]["rankedConditions"],
        "primarySuspicion": done["summary"]["primarySuspicion"],
        "differentialDiagnoses": done["summary"]["differentialDiagnoses"],
        "assessmentMetadata": {
            "startedAt": done.get("startedAt"),
            "completedAt": done.get("completedAt"),
            "totalQuestionsAnswered": len(done["askedQuestions"]),
            "completionReason": done.get("completionReason"),
        },
    }
