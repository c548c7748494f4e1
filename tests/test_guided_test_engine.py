from cdss.tools import guided_test_engine as engine

RULES = {
    "conditions": [
        {
            "name": "Meniscal Tear",
            "recommended_tests": [
                "McMurray Test: Rotate the tibia. Positive: painful click. Negative: smooth motion.",
                "Thessaly Test: Twist on a flexed knee. Positive: joint line pain.",
            ],
            "observations": ["Check for joint line swelling"],
        },
        {
            "name": "Knee Osteoarthritis",
            "recommended_tests": [
                "McMurray Test: Rotate the tibia. Positive: painful click.",
                "Patellar Grind Test: Compress the patella.",
            ],
            "observations": [],
        },
    ]
}


def _state(suspected=("Meniscal Tear",), differentials=("Knee Osteoarthritis",)):
    return engine.initialize_guided_test_engine(
        assessment_id="s1",
        therapist_id="t1",
        region="Knee",
        temporal_diagnosis=suspected[0] if suspected else None,
        suspected_conditions=list(suspected),
        differential_diagnoses=list(differentials),
        rules=RULES,
    )


def test_extract_parses_and_merges_tests():
    tests = engine.extract_recommended_tests(RULES, ["Meniscal Tear", "Knee Osteoarthritis"])
    names = [t["name"] for t in tests]
    assert names == ["McMurray Test", "Thessaly Test", "Observe: joint line swelling", "Patellar Grind Test"]
    mcmurray = tests[0]
    assert mcmurray["positiveImplication"] == "painful click"
    assert mcmurray["negativeImplication"] == "smooth motion"
    assert mcmurray["associatedConditions"] == ["Meniscal Tear", "Knee Osteoarthritis"]
    assert tests[2]["isObservation"] is True
    assert tests[3]["instruction"] == "Compress the patella."


def test_extract_without_suspects_uses_every_condition():
    assert len(engine.extract_recommended_tests(RULES, [])) == 4
    assert engine.extract_recommended_tests(None, ["x"]) == []


def test_initial_likelihoods():
    state = _state()
    assert state["conditionStates"]["Meniscal Tear"]["likelihood"] == 70
    assert state["conditionStates"]["Knee Osteoarthritis"]["likelihood"] == 45
    current = engine.get_current_test(state)
    assert current["name"] == "McMurray Test"
    assert current["testNumber"] == 1
    assert current["totalTests"] == 4


def test_two_positive_tests_confirm_condition():
    state = _state()
    state = engine.record_test_result(state, "test_1", "positive")
    assert not state["isComplete"]
    state = engine.record_test_result(state, "test_2", "positive")
    meniscal = state["conditionStates"]["Meniscal Tear"]
    assert meniscal["likelihood"] == 100
    assert meniscal["status"] == "confirmed"
    assert state["isComplete"]
    assert state["completionReason"] == "condition_confirmed"

    refined = engine.generate_refined_diagnosis(state)
    assert refined["label"] == engine.REFINED_LABEL
    assert refined["finalSuspectedCondition"]["name"] == "Meniscal Tear"
    assert [e["test"] for e in refined["supportingEvidence"]] == ["McMurray Test", "Thessaly Test"]


def test_negative_results_rule_out():
    state = _state(suspected=("Knee Osteoarthritis",), differentials=())
    state = engine.record_test_result(state, "test_1", "negative")
    state = engine.record_test_result(state, "test_2", "negative")
    oa = state["conditionStates"]["Knee Osteoarthritis"]
    assert oa["likelihood"] == 30
    assert oa["status"] == "investigating"


def test_skip_and_adhoc_results():
    state = _state()
    state = engine.skip_test(state, "test_1", "Patient in pain")
    assert engine.get_current_test(state)["name"] == "Thessaly Test"
    state = engine.record_adhoc_result(state, "Lachman Test", "negative", "stable")
    assert state["completedTests"][-1]["testId"] is None
    assert state["conditionStates"]["Meniscal Tear"]["likelihood"] == 70

    refined = engine.generate_refined_diagnosis(engine.complete_guided_test(state))
    assert [t["testName"] for t in refined["testsSkipped"]] == ["McMurray Test"]
    assert [t["testName"] for t in refined["testsPerformed"]] == ["Lachman Test"]


def test_prepare_for_persistence_locks_results():
    state = engine.record_test_result(_state(), "test_1", "positive")
    results = engine.prepare_for_persistence(engine.complete_guided_test(state), "t1")
    assert results["therapistId"] == "t1"
    assert results["isLocked"] is True
    assert results["tests"][0]["testName"] == "McMurray Test"
    assert results["refinedDiagnosis"]["label"] == engine.REFINED_LABEL


def test_ruling_out_the_differential_leaves_single_condition():
    state = _state()
    state = engine.record_test_result(state, "test_4", "negative")
    assert state["conditionStates"]["Knee Osteoarthritis"]["likelihood"] == 25
    assert not state["isComplete"]
    state = engine.record_test_result(state, "test_1", "negative")
    assert state["conditionStates"]["Knee Osteoarthritis"]["status"] == "ruled_out"
    assert state["conditionStates"]["Meniscal Tear"]["status"] == "investigating"
    assert engine.get_current_test(state) is None
    assert state["isComplete"]
    assert state["completionReason"] == "single_condition_remaining"


def test_single_remaining_condition_needs_two_tests():
    state = _state(suspected=("Knee Osteoarthritis",), differentials=())
    state = engine.record_test_result(state, "test_1", "negative")
    assert not state["isComplete"]
    assert state["completionReason"] is None


def test_recording_a_test_twice_is_ignored():
    state = engine.record_test_result(_state(), "test_1", "positive")
    again = engine.record_test_result(state, "test_1", "negative")
    assert again is state
    assert len(again["completedTests"]) == 1
    assert again["conditionStates"]["Meniscal Tear"]["likelihood"] == 85
