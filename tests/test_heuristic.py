from cdss.tools.heuristic import (
    calculate_similarity,
    calculate_temporal_diagnosis,
    determine_severity,
    get_condition_categories,
    validate_symptoms,
)


def _symptom(category, response):
    return {"questionId": category, "questionCategory": category, "response": response}


def test_similarity_rules():
    assert calculate_similarity("knee", "knee") == 1.0
    assert calculate_similarity("Yes", True) == 1.0
    assert calculate_similarity("no", True) == 0.0
    assert calculate_similarity("stairs", ["stairs", "prolonged_walking"]) == 1.0
    assert calculate_similarity(["stairs", "running"], ["stairs", "prolonged_walking"]) == 0.5
    assert calculate_similarity("lower_back_left", "lower_back") == 0.8
    assert calculate_similarity("", "lower_back") == 0.0


def test_knee_pattern_ranks_first():
    result = calculate_temporal_diagnosis(
        [
            _symptom("pain_location", "knee"),
            _symptom("crepitus", "Yes"),
            _symptom("aggravating", "stairs"),
            _symptom("stiffness", "morning_stiffness_short"),
        ]
    )
    primary = result["primaryDiagnosis"]
    assert primary["conditionName"] == "Knee Osteoarthritis"
    assert primary["conditionCode"] == "FA00.0"
    assert primary["confidence"] == 1.0
    assert primary["severity"] == "severe"
    assert "Consider specialist referral" in primary["recommendations"]


def test_low_confidence_conditions_are_dropped():
    result = calculate_temporal_diagnosis([_symptom("pain_location", "elbow")])
    assert result["primaryDiagnosis"] is None
    assert result["differentialDiagnoses"] == []


def test_empty_symptoms_reports_error():
    result = calculate_temporal_diagnosis([])
    assert result["primaryDiagnosis"] is None
    assert result["error"] == "No symptoms provided"


def test_severity_bands():
    levels = {"mild": {"minScore": 0.3, "maxScore": 0.5}, "severe": {"minScore": 0.7, "maxScore": 1.0}}
    assert determine_severity(0.4, levels) == "mild"
    assert determine_severity(0.9, levels) == "severe"
    assert determine_severity(0.1, levels) == "unknown"
    assert determine_severity(0.9, None) == "unknown"


def test_validate_symptoms_reports_each_problem():
    check = validate_symptoms([{"questionId": "q1", "response": "Yes"}, {"response": "No"}, "bad"])
    assert not check["valid"]
    assert check["errors"] == [
        "Symptom at index 1 missing questionId",
        "Symptom at index 2 must be an object",
    ]
    assert validate_symptoms("nope") == {"valid": False, "errors": ["Symptoms must be an array"]}


def test_condition_categories_are_unique():
    assert get_condition_categories() == ["lumbar_spine", "shoulder", "knee"]
