import pytest

from cdss.tools import assessment_engine as engine


def _answer(value, increase=(), decrease=(), red_flag=None):
    effects = {"rule_out": [], "increase_likelihood": list(increase), "decrease_likelihood": list(decrease)}
    if red_flag:
        effects["red_flag"] = True
        effects["red_flag_text"] = red_flag
    return {"value": value, "effects": effects}


RULES = {
    "region": "lumbar",
    "title": "Lumbar Region",
    "conditions": [
        {
            "name": "Lumbar Disc Herniation",
            "questions": [
                {
                    "id": "q_leg",
                    "question": "Does pain travel down your leg?",
                    "category": "radiation",
                    "answers": [_answer("Yes", increase=["Disc Herniation"]), _answer("No", decrease=["Disc Herniation"])],
                },
                {
                    "id": "q_bladder",
                    "question": "Any new bladder changes?",
                    "category": "red_flag",
                    "answers": [_answer("Yes", red_flag="Possible cauda equina"), _answer("No")],
                },
            ],
        },
        {
            "name": "Mechanical Low Back Pain",
            "questions": [
                {
                    "id": "q_rest",
                    "question": "Does rest ease the pain?",
                    "answers": [_answer("Yes", increase=["Mechanical Low Back Pain"]), _answer("No")],
                }
            ],
        },
    ],
}


def test_initialize_requires_conditions():
    with pytest.raises(ValueError):
        engine.initialize_engine({"region": "x"})


def test_questions_are_served_in_order():
    state = engine.initialize_engine(RULES)
    first = engine.get_current_question(state)
    assert first["id"] == "q_leg"
    assert first["conditionName"] == "Lumbar Disc Herniation"
    assert first["totalQuestions"] == 3
    assert [a["value"] for a in first["answers"]] == ["Yes", "No"]

    state = engine.process_answer(state, "q_leg", "yes")
    assert engine.get_current_question(state)["id"] == "q_bladder"
    assert state["conditionStates"]["Lumbar Disc Herniation"]["likelihood"] == 65


def test_red_flags_and_completion():
    state = engine.initialize_engine(RULES)
    for qid, answer in (("q_leg", "Yes"), ("q_bladder", "Yes"), ("q_rest", "No")):
        state = engine.process_answer(state, qid, answer)
    assert state["isComplete"]
    assert state["completionReason"] == "all_questions_answered"
    assert engine.get_current_question(state) is None
    assert [f["redFlagText"] for f in state["redFlags"]] == ["Possible cauda equina"]


def test_unknown_question_leaves_state_untouched():
    state = engine.initialize_engine(RULES)
    assert engine.process_answer(state, "missing", "Yes") is state


def test_previous_question_replays_remaining_answers():
    state = engine.initialize_engine(RULES)
    state = engine.process_answer(state, "q_leg", "Yes")
    state = engine.process_answer(state, "q_bladder", "Yes")
    back = engine.previous_question(state)
    assert [aq["questionId"] for aq in back["askedQuestions"]] == ["q_leg"]
    assert back["redFlags"] == []
    assert engine.get_current_question(back)["id"] == "q_bladder"
    assert back["startedAt"] == state["startedAt"]


def test_prepare_for_ai_analysis_ranks_conditions():
    state = engine.initialize_engine(RULES)
    state = engine.process_answer(state, "q_leg", "No")
    state = engine.process_answer(state, "q_bladder", "No")
    state = engine.process_answer(state, "q_rest", "Yes")
    prepared = engine.prepare_for_ai_analysis(state, {"fullName": "Pat"})

    assert prepared["region"] == "lumbar"
    assert prepared["biodata"] == {"fullName": "Pat"}
    assert prepared["primarySuspicion"]["name"] == "Mechanical Low Back Pain"
    assert [c["likelihood"] for c in prepared["conditionAnalysis"]] == [65, 35]
    assert prepared["symptomData"][0] == {
        "questionId": "q_leg",
        "question": "Does pain travel down your leg?",
        "response": "No",
        "questionCategory": "radiation",
        "conditionContext": "Lumbar Disc Herniation",
        "effects": {"rule_out": [], "increase_likelihood": [], "decrease_likelihood": ["Disc Herniation"]},
    }
    assert prepared["assessmentMetadata"]["totalQuestionsAnswered"] == 3


def test_summary_lists_answers():
    state = engine.process_answer(engine.initialize_engine(RULES), "q_leg", "Yes")
    summary = engine.get_assessment_summary(state)
    assert summary["answeredCount"] == 1
    assert summary["questionsAnswered"] == [
        {"question": "Does pain travel down your leg?", "answer": "Yes", "category": "radiation"}
    ]
