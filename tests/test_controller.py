#!/usr/bin/env python3
"""
Tests for the iteration controller state machine.
"""

import asyncio

from fakes import FakeGenerator, FakeHarness, FakeJudge, defective, make_controller, passing
from variation_qa.controller import should_continue_iteration
from variation_qa.harness import HarnessError
from variation_qa.models import (
    CancellationToken,
    Defect,
    QAResult,
    RunOutcome,
    Severity,
    TestStatus,
    Variation,
)


def run(controller, variation, **kwargs):
    return asyncio.run(controller.run_variation(variation, **kwargs))


def test_placeholder_is_fixed_on_second_iteration():
    """A {{placeholder}} in CSS blocks iteration 1; regenerated code reaches visual QA."""
    harness = FakeHarness()
    judge = FakeJudge([passing()])
    generator = FakeGenerator([(".btn { color: #fff; }", "")])
    variation = Variation("v1", "Green CTA", css=".btn { color: #fff; } {{description}}",
                          description="Make the CTA green")

    result = run(make_controller(harness, judge, generator), variation)

    assert result.outcome == RunOutcome.ACCEPTED
    assert result.iterations == 2
    assert result.test_results[0].has_errors
    assert "Template syntax found in CSS" in result.test_results[0].errors[0]
    assert not result.test_results[1].has_errors
    assert len(generator.calls) == 1
    assert "Template syntax found in CSS" in generator.calls[0]["feedback"]
    assert "Make the CTA green" in generator.calls[0]["feedback"]
    assert len(judge.calls) == 1
    assert variation.css == ".btn { color: #fff; }"
    assert variation.test_status == TestStatus.PASSED
    assert result.usage["total_tokens"] == 15


def test_dynamically_created_selector_is_not_reported_missing():
    """A class the script creates and later queries is never 'Element not found'."""
    js = (
        "const wrapper = document.createElement('div');\n"
        "wrapper.className = 'btn-wrapper-created';\n"
        "document.body.appendChild(wrapper);\n"
        "const found = document.querySelector('.btn-wrapper-created');\n"
        "if (found) { found.textContent = 'Hi'; }"
    )
    harness = FakeHarness(present=[])
    judge = FakeJudge([passing()])
    generator = FakeGenerator()
    variation = Variation("v2", "Wrapper", js=js)

    result = run(make_controller(harness, judge, generator), variation)

    assert result.outcome == RunOutcome.ACCEPTED
    assert result.iterations == 1
    assert not any("Element not found" in e for r in result.test_results for e in r.errors)
    assert harness.count("query") == 0
    assert generator.calls == []


def test_identical_defects_stop_at_second_iteration():
    """Structurally identical defect sets on iterations 1 and 2 end the run at 2."""
    harness = FakeHarness()
    judge = FakeJudge([
        QAResult("MAJOR_DEFECT", [Defect("contrast", "major", "text unreadable")], should_continue=True),
        QAResult("MAJOR_DEFECT", [Defect("contrast", "major", "text still unreadable")], should_continue=True),
        passing()
    ])
    generator = FakeGenerator()
    variation = Variation("v3", "Contrast", css=".hero { color: #eee; }")

    result = run(make_controller(harness, judge, generator, max_iterations=5), variation)

    assert result.outcome == RunOutcome.NEEDS_REVIEW
    assert result.iterations == 2
    assert len(judge.calls) == 2
    assert len(generator.calls) == 1
    assert [d.type for d in result.remaining_defects] == ["contrast"]
    assert "not converging" in result.reason
    assert variation.test_status == TestStatus.WARNING


def test_pass_on_first_iteration_is_accepted_immediately():
    harness = FakeHarness()
    judge = FakeJudge([passing()])
    generator = FakeGenerator()
    variation = Variation("v4", "Simple", css=".cta { font-weight: bold; }")

    result = run(make_controller(harness, judge, generator), variation)

    assert result.outcome == RunOutcome.ACCEPTED
    assert result.iterations == 1
    assert len(result.qa_history) == 1
    assert len(variation.qa_history) == 1
    assert variation.test_status == TestStatus.PASSED
    assert generator.calls == []


def test_missing_after_screenshot_skips_visual_qa():
    """A failed 'after' capture completes the technical pass and skips the judge."""
    harness = FakeHarness(fail_after_screenshot=True)
    judge = FakeJudge([passing()])
    generator = FakeGenerator()
    variation = Variation("v5", "No screenshot", css=".cta { color: red; }")

    result = run(make_controller(harness, judge, generator), variation)

    assert result.outcome == RunOutcome.ACCEPTED
    assert result.visual_qa_skipped
    assert result.iterations == 1
    assert judge.calls == []
    assert not result.test_results[0].has_errors
    assert variation.test_status == TestStatus.WARNING


def test_judge_error_degrades_to_skipped_visual_qa():
    harness = FakeHarness()
    judge = FakeJudge([QAResult.error("Visual QA failed: timeout")])
    generator = FakeGenerator()
    variation = Variation("v6", "Judge down", css=".cta { color: red; }")

    result = run(make_controller(harness, judge, generator), variation)

    assert result.outcome == RunOutcome.ACCEPTED
    assert result.visual_qa_skipped
    assert len(result.qa_history) == 1
    assert variation.test_status == TestStatus.WARNING


def test_changing_defects_run_until_visual_cap():
    judge = FakeJudge([defective("a"), defective("a", "b"), defective("c"), defective("d"), defective("e")])
    variation = Variation("v7", "Noisy", css=".x { color: red; }")

    result = run(make_controller(FakeHarness(), judge, FakeGenerator(), visual_iteration_cap=3), variation)

    assert result.outcome == RunOutcome.NEEDS_REVIEW
    assert result.iterations == 3
    assert "cap" in result.reason


def test_changing_defects_without_cap_stop_at_max_iterations():
    judge = FakeJudge([defective("a"), defective("a", "b"), defective("c"), defective("d"), defective("e")])
    generator = FakeGenerator()
    variation = Variation("v8", "Noisy", css=".x { color: red; }")

    result = run(make_controller(FakeHarness(), judge, generator, max_iterations=5, visual_iteration_cap=None),
                 variation)

    assert result.outcome == RunOutcome.NEEDS_REVIEW
    assert result.iterations == 5
    assert len(judge.calls) == 5
    assert len(generator.calls) == 4


def test_quick_mode_uses_lower_ceiling():
    judge = FakeJudge([defective("a"), defective("a", "b"), defective("c"), defective("d")])
    variation = Variation("v9", "Quick", css=".x { color: red; }")
    controller = make_controller(FakeHarness(), judge, FakeGenerator(),
                                 max_iterations=5, quick_max_iterations=3, visual_iteration_cap=None)

    result = run(controller, variation, quick=True)

    assert result.iterations == 3
    assert result.iterations <= 3
    assert {call["max_iterations"] for call in judge.calls} == {3}


def test_persistent_technical_errors_need_review_at_ceiling():
    """The technical branch is bounded by max_iterations only."""
    generator = FakeGenerator([("", "document.write('still broken');")])
    variation = Variation("v10", "Broken", js="document.write('broken');")
    controller = make_controller(FakeHarness(), FakeJudge([passing()]), generator,
                                 max_iterations=4, visual_iteration_cap=3)

    result = run(controller, variation)

    assert result.outcome == RunOutcome.NEEDS_REVIEW
    assert result.iterations == 4
    assert len(generator.calls) == 3
    assert "Use of deprecated document.write()" in result.technical_errors
    assert variation.test_status == TestStatus.FAILED


def test_static_selector_missing_without_guard_is_critical():
    variation = Variation("v11", "Title", js="document.querySelector('.hero-title').textContent = 'New';")
    harness = FakeHarness(present=[])

    result = run(make_controller(harness, FakeJudge([passing()]), FakeGenerator(), max_iterations=1), variation)

    assert result.outcome == RunOutcome.NEEDS_REVIEW
    assert "Element not found: .hero-title" in result.technical_errors
    assert harness.count("query") == 1


def test_console_errors_count_as_technical_issues():
    harness = FakeHarness(console_errors=["TypeError: boom"])
    variation = Variation("v12", "Noisy console", js="console.log('x');")

    result = run(make_controller(harness, FakeJudge([passing()]), FakeGenerator(), max_iterations=1), variation)

    assert "Console error: TypeError: boom" in result.technical_errors


def test_apply_error_message_is_a_technical_issue():
    harness = FakeHarness(apply_result={"success": False, "logs": ["Error: x is not defined"],
                                        "error": "x is not defined"})
    generator = FakeGenerator()
    variation = Variation("v13", "Ref error", js="x.focus();")

    result = run(make_controller(harness, FakeJudge([passing()]), generator, max_iterations=2), variation)

    assert result.outcome == RunOutcome.NEEDS_REVIEW
    assert "Code application failed: x is not defined" in result.technical_errors
    assert len(generator.calls) == 1


def test_apply_failure_without_explanation_aborts():
    harness = FakeHarness(apply_result={"success": False, "logs": [], "error": None})
    generator = FakeGenerator()
    variation = Variation("v14", "Silent failure", css=".x { color: red; }")

    result = run(make_controller(harness, FakeJudge([passing()]), generator), variation)

    assert result.outcome == RunOutcome.ABORTED
    assert result.iterations == 1
    assert generator.calls == []
    assert variation.test_status == TestStatus.FAILED


def test_apply_exception_aborts():
    harness = FakeHarness(apply_exception=HarnessError("tab closed"))
    variation = Variation("v15", "Tab gone", css=".x { color: red; }")

    result = run(make_controller(harness, FakeJudge([passing()]), FakeGenerator()), variation)

    assert result.outcome == RunOutcome.ABORTED
    assert "tab closed" in result.reason


def test_regeneration_without_code_aborts():
    generator = FakeGenerator([None])
    variation = Variation("v16", "Placeholder", css=".x { color: {{color}}; }")

    result = run(make_controller(FakeHarness(), FakeJudge([passing()]), generator), variation)

    assert result.outcome == RunOutcome.ABORTED
    assert "model unavailable" in result.reason
    assert result.iterations == 1
    assert variation.test_status == TestStatus.FAILED


def test_cancel_before_start_aborts_without_applying():
    token = CancellationToken()
    token.cancel("Stopped by user")
    harness = FakeHarness()
    variation = Variation("v17", "Cancelled", css=".x { color: red; }")

    result = run(make_controller(harness, FakeJudge([passing()]), FakeGenerator()), variation, token=token)

    assert result.outcome == RunOutcome.ABORTED
    assert result.reason == "Stopped by user"
    assert result.iterations == 0
    assert harness.count("apply") == 0
    assert variation.test_status == TestStatus.FAILED


def test_cancel_during_round_is_honored_after_round_completes():
    token = CancellationToken()
    judge = FakeJudge([defective("contrast")], on_call=lambda n: token.cancel("Stopped by user"))
    generator = FakeGenerator()
    variation = Variation("v18", "Cancelled mid-run", css=".x { color: red; }")

    result = run(make_controller(FakeHarness(), judge, generator), variation, token=token)

    assert result.outcome == RunOutcome.ABORTED
    assert result.iterations == 1
    assert len(result.qa_history) == 1
    assert generator.calls == []
    assert variation.test_status != TestStatus.TESTING


def test_reset_timeout_is_not_fatal():
    harness = FakeHarness(reset_delay=0.5)
    variation = Variation("v19", "Slow reset", css=".x { color: red; }")
    controller = make_controller(harness, FakeJudge([passing()]), FakeGenerator(), reset_timeout=0.01)

    result = run(controller, variation)

    assert result.outcome == RunOutcome.ACCEPTED


def test_failed_reset_fails_closed():
    harness = FakeHarness(reset_result=False)
    variation = Variation("v20", "Stale page", css=".x { color: red; }")

    result = run(make_controller(harness, FakeJudge([passing()]), FakeGenerator()), variation)

    assert result.outcome == RunOutcome.ABORTED
    assert harness.count("apply") == 0


def test_every_apply_is_preceded_by_reset_of_both_prefixes():
    harness = FakeHarness()
    judge = FakeJudge([defective("a"), defective("b", "c"), passing()])
    variation = Variation("v21", "Ordering", css=".x { color: red; }")
    controller = make_controller(harness, judge, FakeGenerator())

    run(controller, variation)

    window = []
    for call in harness.calls:
        if call[0] == "apply":
            assert ("reset", controller.key_prefix) in window
            assert ("reset", controller.preview_prefix) in window
            assert ("shim",) in window
            window = []
        else:
            window.append(call)
    assert harness.count("apply") == 3


def test_before_screenshot_is_captured_once_and_reused():
    harness = FakeHarness()
    judge = FakeJudge([defective("a"), defective("b", "c"), passing()])
    variation = Variation("v22", "Baseline", css=".x { color: red; }")

    run(make_controller(harness, judge, FakeGenerator()), variation)

    befores = {call["before_screenshot"] for call in judge.calls}
    assert befores == {b"page-before"}
    assert harness.count("screenshot") == 1 + len(judge.calls)
    assert judge.calls[1]["previous_defects"][0].type == "a"


def test_page_reloads_before_retries_only():
    class ReloadingHarness(FakeHarness):
        supports_reload = True

        async def reload_page(self):
            self.calls.append(("reload",))
            return True

    harness = ReloadingHarness()
    judge = FakeJudge([defective("a"), passing()])
    variation = Variation("v23", "Reload", css=".x { color: red; }")

    result = run(make_controller(harness, judge, FakeGenerator()), variation)

    assert result.iterations == 2
    assert harness.count("reload") == 1


def test_run_batch_is_sequential_and_stops_on_cancel():
    token = CancellationToken()
    harness = FakeHarness()
    controller = make_controller(harness, FakeJudge([passing()]), FakeGenerator())
    variations = [
        Variation("a", "First", css=".a { color: red; }"),
        Variation("b", "Second", css=".b { color: red; }"),
        Variation("c", "Third", css=".c { color: red; }")
    ]
    seen = []

    def on_result(result):
        seen.append(result.variation.id)
        if len(seen) == 2:
            token.cancel("Stopped by user")

    results = asyncio.run(controller.run_batch(variations, token=token, on_result=on_result))

    assert [r.variation.id for r in results] == ["a", "b"]
    assert all(r.outcome == RunOutcome.ACCEPTED for r in results)
    assert variations[2].test_status == TestStatus.PENDING
    assert harness.injected == {}


def test_should_continue_iteration_policy():
    contrast = [Defect("contrast", Severity.MAJOR, "text unreadable")]
    layout = [Defect("layout-broken", Severity.CRITICAL, "hero collapsed")]
    qa = QAResult("MAJOR_DEFECT", contrast, should_continue=True)

    assert should_continue_iteration(qa, 1, [], max_iterations=5)
    assert should_continue_iteration(qa, 2, layout, max_iterations=5)
    assert not should_continue_iteration(qa, 2, contrast, max_iterations=5)
    assert not should_continue_iteration(qa, 5, layout, max_iterations=5, visual_iteration_cap=None)
    assert not should_continue_iteration(qa, 3, layout, max_iterations=5, visual_iteration_cap=3)
    assert should_continue_iteration(qa, 3, layout, max_iterations=5, visual_iteration_cap=None)


def test_judge_stop_hint_is_opt_in():
    qa = QAResult("MAJOR_DEFECT", [Defect("contrast", "major", "low contrast")], should_continue=False)

    assert should_continue_iteration(qa, 1, [], max_iterations=5)
    assert not should_continue_iteration(qa, 1, [], max_iterations=5, honor_stop_hint=True)


class RemovingHarness(FakeHarness):
    """Page whose .promo-banner disappears while a script removing it is applied."""

    def __init__(self):
        super().__init__(present=[".promo-banner"])

    async def apply_code(self, key, css, js):
        reply = await super().apply_code(key, css, js)
        if js and ".remove()" in js:
            self.present.discard(".promo-banner")
        return reply

    async def reset_by_key_prefix(self, prefix):
        self.present.add(".promo-banner")
        return await super().reset_by_key_prefix(prefix)


def test_selectors_are_checked_against_page_before_apply():
    harness = RemovingHarness()
    variation = Variation("v30", "No banner", js="document.querySelector('.promo-banner').remove();")

    result = run(make_controller(harness, FakeJudge([passing()]), FakeGenerator()), variation)

    assert result.outcome == RunOutcome.ACCEPTED
    assert result.technical_errors == []
    names = [call[0] for call in harness.calls]
    assert names.index("query") < names.index("apply")


def test_console_is_restored_when_apply_raises():
    harness = FakeHarness(apply_exception=HarnessError("tab closed"))
    variation = Variation("v31", "Tab gone", css=".x { color: red; }")

    result = run(make_controller(harness, FakeJudge([passing()]), FakeGenerator()), variation)

    assert result.outcome == RunOutcome.ABORTED
    assert harness.count("shim") == 1
    assert harness.count("console") == 1


def test_console_is_restored_when_apply_fails_silently():
    harness = FakeHarness(apply_result={"success": False, "logs": [], "error": None})
    variation = Variation("v32", "Silent failure", css=".x { color: red; }")

    result = run(make_controller(harness, FakeJudge([passing()]), FakeGenerator()), variation)

    assert result.outcome == RunOutcome.ABORTED
    assert harness.count("console") == 1


def test_regeneration_keeps_the_variation_under_test():
    class MultiVariationGenerator(FakeGenerator):
        async def adjust_code(self, page_data, previous_code, feedback):
            self.calls.append({"page_data": page_data, "previous_code": previous_code, "feedback": feedback})
            return {
                "success": True,
                "code": {"variations": [
                    {"number": 1, "name": "First", "css": ".one { color: #111; }", "js": ""},
                    {"number": 2, "name": "Second", "css": ".two { color: #222; }", "js": ""}
                ], "globalCSS": "", "globalJS": ""},
                "usage": None,
                "error": None
            }

    generator = MultiVariationGenerator()
    variation = Variation("v33", "Second arm", css=".two { color: {{color}}; }", number=2)

    result = run(make_controller(FakeHarness(), FakeJudge([passing()]), generator), variation)

    assert result.outcome == RunOutcome.ACCEPTED
    assert generator.calls[0]["previous_code"]["number"] == 2
    assert variation.css == ".two { color: #222; }"
