#!/usr/bin/env python3
"""
Tests for VisionJudge pre-screening, prompt building and response parsing.
"""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from variation_qa.judge import VisionJudge, to_data_url
from variation_qa.models import Defect, QAStatus, Severity


def make_judge(max_iterations=5):
    judge = VisionJudge(provider="openai", model_name="gpt-4o", api_key="test-key", max_iterations=max_iterations)
    judge.client = MagicMock()
    return judge


def completion(content, prompt_tokens=100, completion_tokens=20):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens
        )
    )


VERDICT = {
    "status": "MAJOR_DEFECT",
    "goalAccomplished": False,
    "defects": [{
        "severity": "major",
        "type": "poor-contrast",
        "description": "CTA text is light gray on white",
        "suggestedFix": ".cta { color: #111 !important; }"
    }],
    "reasoning": "Contrast too low",
    "shouldContinue": True
}


def test_parse_response_accepts_fenced_json():
    judge = make_judge()

    result = judge.parse_response("```json\n" + json.dumps(VERDICT) + "\n```", iteration=2)

    assert result.status == QAStatus.MAJOR_DEFECT
    assert result.iteration == 2
    assert result.defects[0].type == "poor-contrast"
    assert result.defects[0].severity == Severity.MAJOR
    assert result.defects[0].suggested_fix == ".cta { color: #111 !important; }"
    assert result.should_continue is True


def test_parse_response_defaults_should_continue_from_status():
    judge = make_judge()
    passing = {"status": "PASS", "goalAccomplished": True, "defects": [], "reasoning": "ok"}
    failing = dict(VERDICT)
    del failing["shouldContinue"]

    assert judge.parse_response(json.dumps(passing)).should_continue is False
    assert judge.parse_response(json.dumps(failing)).should_continue is True


@pytest.mark.parametrize("change", [
    {"status": "MAYBE"},
    {"goalAccomplished": "no"},
    {"defects": [{"severity": "minor", "type": "x", "description": "y"}]},
    {"defects": [{"severity": "major", "type": "x"}]},
])
def test_parse_response_rejects_schema_violations(change):
    judge = make_judge()
    data = dict(VERDICT)
    data.update(change)

    result = judge.parse_response(json.dumps(data), iteration=1)

    assert result.status == QAStatus.ERROR
    assert result.should_continue is False
    assert "Failed to parse AI response" in result.reasoning


def test_parse_response_rejects_non_json():
    assert make_judge().parse_response("The page looks fine.").status == QAStatus.ERROR


def test_identical_screenshots_are_pre_screened():
    judge = make_judge()

    result = asyncio.run(judge.run_qa("Make it green", b"same", b"same", iteration=1))

    assert result.status == QAStatus.GOAL_NOT_MET
    assert result.pre_screened
    assert result.defects[0].type == "element-missing"
    assert result.defects[0].severity == Severity.CRITICAL
    judge.client.chat.completions.create.assert_not_called()


def test_repeated_selector_without_idempotency_is_flagged():
    judge = make_judge()
    js = "document.querySelector('.cta').style.color = 'red';\ndocument.querySelector('.cta').title = 'x';"

    issues = judge.analyze_code_for_issues({"css": "", "js": js})

    assert [d.type for d in issues] == ["potential-duplication"]
    assert issues[0].severity == Severity.CRITICAL
    assert judge.analyze_code_for_issues({"js": js + "\nel.dataset.varApplied = '1';"}) == []


def test_multiple_text_writes_without_idempotency_are_flagged():
    judge = make_judge()
    js = "a.textContent = 'One';\nb.textContent = 'Two';"

    issues = judge.analyze_code_for_issues(js)

    assert [d.type for d in issues] == ["missing-idempotency"]
    assert issues[0].severity == Severity.MAJOR


def test_generator_output_is_analyzed_too():
    judge = make_judge()
    code = {
        "variations": [{"number": 1, "css": "", "js": "x.style.a = 1; x.style.b = 2; x.style.c = 3; x.style.d = 4;"}],
        "globalCSS": "",
        "globalJS": ""
    }

    assert [d.type for d in judge.analyze_code_for_issues(code)] == ["missing-idempotency"]


def test_static_code_issues_short_circuit_the_model():
    judge = make_judge()
    js = "a.textContent = 'One';\nb.textContent = 'Two';"

    result = asyncio.run(judge.run_qa("Change labels", b"before", b"after", 1, [], {"js": js}))

    assert result.status == QAStatus.CRITICAL_DEFECT
    assert result.pre_screened
    judge.client.chat.completions.create.assert_not_called()


def test_run_qa_calls_model_with_both_screenshots():
    judge = make_judge()
    judge.client.chat.completions.create.return_value = completion(json.dumps(VERDICT))

    result = asyncio.run(judge.run_qa(
        "Make the CTA stand out", b"before-png", b"after-png", iteration=1,
        generated_code={"css": ".cta { color: #eee; }", "js": ""}
    ))

    assert result.status == QAStatus.MAJOR_DEFECT
    assert result.iteration == 1
    assert result.usage == {"prompt_tokens": 100, "completion_tokens": 20, "total_tokens": 120}

    kwargs = judge.client.chat.completions.create.call_args.kwargs
    content = kwargs["messages"][1]["content"]
    images = [part["image_url"]["url"] for part in content if part["type"] == "image_url"]
    assert images == [to_data_url(b"before-png"), to_data_url(b"after-png")]
    assert kwargs["response_format"] == {"type": "json_object"}
    assert "Make the CTA stand out" in content[0]["text"]


def test_run_qa_converts_exceptions_to_error_result():
    judge = make_judge()
    judge.client.chat.completions.create.side_effect = RuntimeError("rate limited")

    result = asyncio.run(judge.run_qa("Goal", b"a", b"b", iteration=3))

    assert result.status == QAStatus.ERROR
    assert result.iteration == 3
    assert "rate limited" in result.reasoning


def test_build_prompt_marks_final_iteration_and_previous_defects():
    judge = make_judge(max_iterations=3)
    previous = [Defect("poor-contrast", Severity.MAJOR, "CTA unreadable")]
    database = {"elements": [{"tag": "button", "classes": ["btn"]}]}

    prompt = judge.build_prompt("Make it pop", 3, previous, database)

    assert "Make it pop" in prompt
    assert "Iteration 3/3 - FINAL ITERATION" in prompt
    assert "1. [MAJOR] CTA unreadable" in prompt
    assert "**EXPECTED PAGE STRUCTURE:**" in prompt
    assert '"status": "PASS" | "GOAL_NOT_MET" | "CRITICAL_DEFECT" | "MAJOR_DEFECT"' in prompt


def test_build_prompt_first_iteration_has_no_previous_defects():
    judge = make_judge()

    prompt = judge.build_prompt("Make it pop", 1, [Defect("x", "major", "old")])

    assert "Previous Defects" not in prompt
    assert "FINAL ITERATION" not in prompt


def test_unknown_provider_without_endpoint_is_rejected():
    with pytest.raises(ValueError):
        VisionJudge(provider="mystery", model_name="m", api_key="k")


def test_build_prompt_uses_run_ceiling_when_given():
    judge = make_judge(max_iterations=5)

    prompt = judge.build_prompt("Make it pop", 3, [], max_iterations=3)

    assert "Iteration 3/3 - FINAL ITERATION" in prompt
    assert "iteration >= 3 and there are no critical defects" in prompt


def test_run_qa_passes_run_ceiling_to_prompt():
    judge = make_judge(max_iterations=5)
    judge.client.chat.completions.create.return_value = completion(json.dumps(VERDICT))

    asyncio.run(judge.run_qa("Goal", b"before", b"after", iteration=3, max_iterations=3))

    content = judge.client.chat.completions.create.call_args.kwargs["messages"][1]["content"]
    assert "Iteration 3/3 - FINAL ITERATION" in content[0]["text"]
