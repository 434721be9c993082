"""
Iteration controller: runs one variation to convergence.

Each iteration resets the tab, looks up the selectors the code relies on,
applies the code and checks it for technical issues. Technically clean code
goes to the visual judge. Failures feed back into the code generator until
the variation is accepted, stops converging, or runs out of iterations.

Terminal outcomes:
    accepted      the judge passed the variation (or visual QA was unavailable)
    needs_review  iterations exhausted or defects stopped changing
    aborted       cancelled, harness failure, or regeneration produced no code
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from .feedback import from_technical_errors, from_visual_defects
from .generator import select_variation_code
from .harness import PageHarness
from .models import (
    CancellationToken,
    Defect,
    IterationState,
    QAResult,
    QAStatus,
    RunOutcome,
    RunResult,
    TestResult,
    TestStatus,
    Variation,
    same_defects,
)
from .validator import TechnicalValidator

logger = logging.getLogger(__name__)


def should_continue_iteration(
    qa_result: QAResult,
    iteration: int,
    previous_defects: List[Defect],
    max_iterations: int = 5,
    visual_iteration_cap: Optional[int] = 3,
    honor_stop_hint: bool = False
) -> bool:
    """
    Decide whether a visual defect round is worth another iteration.

    Args:
        qa_result: Verdict of the current round
        iteration: Current 1-based iteration
        previous_defects: Defects of the previous round
        max_iterations: Overall iteration ceiling
        visual_iteration_cap: Iteration at which the visual branch always stops
            (None disables the cap)
        honor_stop_hint: Also stop when the judge says shouldContinue=false

    Returns:
        True to regenerate and try again
    """
    if iteration >= max_iterations:
        logger.info("Stopping: reached max iterations (%d)", max_iterations)
        return False

    if same_defects(qa_result.defects, previous_defects):
        logger.info("Stopping: same defects as previous iteration, not converging")
        return False

    if visual_iteration_cap is not None and iteration >= visual_iteration_cap:
        logger.info("Stopping: visual iteration cap (%d) reached", visual_iteration_cap)
        return False

    if honor_stop_hint and not qa_result.should_continue:
        logger.info("Stopping: judge advised not to continue")
        return False

    return True


class IterationController:
    """Drives the apply, probe, judge and regenerate loop for variations on one tab."""

    def __init__(
        self,
        harness: PageHarness,
        judge,
        generator,
        validator: Optional[TechnicalValidator] = None,
        max_iterations: int = 5,
        quick_max_iterations: int = 3,
        visual_iteration_cap: Optional[int] = 3,
        settle_delay: float = 2.0,
        reset_timeout: float = 3.0,
        reload_timeout: float = 10.0,
        reload_between_iterations: bool = True,
        key_prefix: str = "variation-qa-",
        preview_prefix: str = "variation-qa-preview",
        honor_judge_stop_hint: bool = False
    ):
        """
        Initialize controller.

        Args:
            harness: PageHarness for the tab under test
            judge: Object with an async run_qa(...) returning QAResult
            generator: Object with async adjust_code(...) returning {success, code, usage, error}
            validator: TechnicalValidator (a default one is created if None)
            max_iterations: Iteration ceiling for normal runs
            quick_max_iterations: Iteration ceiling for quick refinements
            visual_iteration_cap: Iteration at which visual-defect rounds always stop
            settle_delay: Seconds to wait after apply before collecting console errors
            reset_timeout: Seconds allowed for a reset round trip
            reload_timeout: Seconds allowed for a page reload
            reload_between_iterations: Reload the page before each retry
            key_prefix: Injection key prefix owned by this controller
            preview_prefix: Key prefix of preview injections cleared before apply
            honor_judge_stop_hint: Stop when the judge says shouldContinue=false
        """
        self.harness = harness
        self.judge = judge
        self.generator = generator
        self.validator = validator or TechnicalValidator()
        self.max_iterations = max_iterations
        self.quick_max_iterations = quick_max_iterations
        self.visual_iteration_cap = visual_iteration_cap
        self.settle_delay = settle_delay
        self.reset_timeout = reset_timeout
        self.reload_timeout = reload_timeout
        self.reload_between_iterations = reload_between_iterations
        self.key_prefix = key_prefix
        self.preview_prefix = preview_prefix
        self.honor_judge_stop_hint = honor_judge_stop_hint

    @classmethod
    def from_config(cls, config, harness: PageHarness, judge, generator) -> "IterationController":
        """Build a controller from a ConfigLoader's iteration section."""
        settings = config.get_iteration_config()
        return cls(
            harness=harness,
            judge=judge,
            generator=generator,
            max_iterations=settings["max_iterations"],
            quick_max_iterations=settings["quick_max_iterations"],
            visual_iteration_cap=settings["visual_iteration_cap"],
            settle_delay=settings["settle_delay"],
            reset_timeout=settings["reset_timeout"],
            reload_timeout=settings["reload_timeout"],
            reload_between_iterations=settings["reload_between_iterations"],
            key_prefix=settings["key_prefix"],
            preview_prefix=settings["preview_prefix"],
            honor_judge_stop_hint=settings["honor_judge_stop_hint"]
        )

    def variation_key(self, variation: Variation) -> str:
        return f"{self.key_prefix}{variation.id}"

    async def run_variation(
        self,
        variation: Variation,
        original_request: Optional[str] = None,
        page_data: Optional[Dict[str, Any]] = None,
        token: Optional[CancellationToken] = None,
        quick: bool = False,
        element_database: Optional[Dict[str, Any]] = None
    ) -> RunResult:
        """
        Run a variation to a terminal outcome.

        Args:
            variation: Variation to test; its code and status are updated in place
            original_request: Goal given to the judge (defaults to the variation description)
            page_data: Page context forwarded to the code generator
            token: Cancellation token polled at iteration boundaries
            quick: Use the quick-refinement iteration ceiling
            element_database: Optional expected page structure for feedback and QA

        Returns:
            RunResult describing the outcome
        """
        token = token or CancellationToken()
        max_iterations = self.quick_max_iterations if quick else self.max_iterations
        state = IterationState(max_iterations, token)
        result = RunResult(variation)
        request = original_request or variation.description or variation.name
        page_data = page_data or {}
        if element_database is None:
            element_database = page_data.get("element_database")

        variation.test_status = TestStatus.TESTING
        variation.qa_history = []

        logger.info("Testing %s (max %d iterations)", variation.name, max_iterations)

        try:
            await self._run_loop(variation, request, page_data, element_database, state, result)
        except Exception as e:
            logger.exception("Unexpected error while testing %s", variation.name)
            self._finish(result, RunOutcome.ABORTED, f"Unexpected error: {str(e)}")

        if result.outcome is None:
            self._finish(result, RunOutcome.NEEDS_REVIEW, f"Reached max iterations ({max_iterations})")

        result.iterations = state.iteration
        result.elapsed = state.elapsed
        variation.test_status = self._status_for(result)

        logger.info(
            "%s finished: %s after %d iteration(s) - %s",
            variation.name, result.outcome.value, result.iterations, result.reason
        )
        return result

    async def run_batch(
        self,
        variations: List[Variation],
        original_request: Optional[str] = None,
        page_data: Optional[Dict[str, Any]] = None,
        token: Optional[CancellationToken] = None,
        quick: bool = False,
        request_delay: float = 0,
        on_result: Optional[Callable[[RunResult], None]] = None
    ) -> List[RunResult]:
        """
        Test variations one after another on the shared tab.

        Variations not started before cancellation are left pending and are
        not included in the results.

        Returns:
            RunResults in variation order
        """
        token = token or CancellationToken()
        results = []

        for index, variation in enumerate(variations):
            if token.cancelled:
                logger.info("Batch cancelled before %s: %s", variation.name, token.reason)
                break

            if index > 0 and request_delay:
                await asyncio.sleep(request_delay)

            goal = variation.description or original_request
            result = await self.run_variation(
                variation,
                original_request=goal,
                page_data=page_data,
                token=token,
                quick=quick
            )
            results.append(result)
            if on_result:
                on_result(result)

        await self._reset_all()
        return results

    async def _run_loop(
        self,
        variation: Variation,
        request: str,
        page_data: Dict[str, Any],
        element_database: Optional[Dict[str, Any]],
        state: IterationState,
        result: RunResult
    ):
        await self._reset_all()
        before = await self._capture_screenshot("before")

        while state.iteration < state.max_iterations:
            if not state.active:
                self._finish(result, RunOutcome.ABORTED, state.cancel_reason)
                return

            state.iteration += 1
            logger.info("Iteration %d/%d for %s", state.iteration, state.max_iterations, variation.name)

            test_result = await self._apply_and_probe(variation, state, result)
            if test_result is None:
                return
            result.test_results.append(test_result)

            if test_result.has_errors:
                result.technical_errors = list(test_result.errors)
                for error in test_result.errors:
                    logger.info("  Technical issue: %s", error)

                if state.iteration >= state.max_iterations:
                    self._finish(
                        result, RunOutcome.NEEDS_REVIEW,
                        f"Technical issues remain after {state.iteration} iteration(s)"
                    )
                    return

                if not state.active:
                    self._finish(result, RunOutcome.ABORTED, state.cancel_reason)
                    return

                feedback = from_technical_errors(test_result, variation.description, variation.name)
                if not await self._regenerate(variation, page_data, feedback, result):
                    return
                continue

            result.technical_errors = []
            after = test_result.screenshot

            if before is None or after is None:
                logger.warning(
                    "Screenshot unavailable (%s), skipping visual QA for %s",
                    "before" if before is None else "after", variation.name
                )
                result.visual_qa_skipped = True
                self._finish(result, RunOutcome.ACCEPTED, "Technical checks passed; visual QA skipped (no screenshot)")
                return

            qa_result = await self._run_visual_qa(variation, request, before, after, state, element_database)
            variation.qa_history.append(qa_result)
            result.add_usage(qa_result.usage)

            if qa_result.status == QAStatus.ERROR:
                logger.warning("Visual QA unavailable for %s: %s", variation.name, qa_result.reasoning)
                result.visual_qa_skipped = True
                self._finish(result, RunOutcome.ACCEPTED, f"Technical checks passed; visual QA skipped ({qa_result.reasoning})")
                return

            if qa_result.passed:
                result.remaining_defects = []
                self._finish(result, RunOutcome.ACCEPTED, qa_result.reasoning or "Visual QA passed")
                return

            result.remaining_defects = list(qa_result.defects)
            for defect in qa_result.defects:
                logger.info("  [%s] %s: %s", defect.severity.value.upper(), defect.type, defect.description)

            if not should_continue_iteration(
                qa_result,
                state.iteration,
                state.previous_defects,
                max_iterations=state.max_iterations,
                visual_iteration_cap=self.visual_iteration_cap,
                honor_stop_hint=self.honor_judge_stop_hint
            ):
                self._finish(result, RunOutcome.NEEDS_REVIEW, self._stop_reason(qa_result, state))
                return

            if not state.active:
                self._finish(result, RunOutcome.ABORTED, state.cancel_reason)
                return

            feedback = from_visual_defects(qa_result, element_database)
            if feedback is None:
                self._finish(result, RunOutcome.NEEDS_REVIEW, "Visual QA failed without actionable defects")
                return

            if not await self._regenerate(variation, page_data, feedback, result):
                return
            state.previous_defects = list(qa_result.defects)

    async def _apply_and_probe(
        self,
        variation: Variation,
        state: IterationState,
        result: RunResult
    ) -> Optional[TestResult]:
        """
        Reset, apply the current code, and probe it.

        Returns:
            TestResult, or None when the run was aborted
        """
        if state.iteration > 1 and self.reload_between_iterations and self.harness.supports_reload:
            await self._bounded("Reload", self.harness.reload_page(), self.reload_timeout)

        if not await self._reset_all():
            self._finish(result, RunOutcome.ABORTED, "Could not reset previously injected code")
            return None

        cleaned = self.validator.clean_code(variation.css, variation.js)
        errors = []

        # Probe the clean page; the variation's own script may remove or rewrite its targets
        presence = None
        selectors = self.validator.selectors_to_probe(cleaned.js)
        if selectors:
            try:
                presence = await self.harness.query_selectors(selectors)
            except Exception as e:
                logger.warning("Selector probe failed, skipping selector checks: %s", e)

        try:
            await self.harness.install_console_shim()
        except Exception as e:
            logger.warning("Console shim unavailable: %s", e)

        try:
            try:
                applied = await self.harness.apply_code(self.variation_key(variation), cleaned.css, cleaned.js)
            except Exception as e:
                self._finish(result, RunOutcome.ABORTED, f"Harness failed to apply code: {str(e)}")
                return None

            if not applied.get("success"):
                if not applied.get("error") and not applied.get("logs"):
                    self._finish(result, RunOutcome.ABORTED, "Harness failed to apply code without explanation")
                    return None
                errors.append(f"Code application failed: {applied.get('error') or '; '.join(applied.get('logs'))}")

            await asyncio.sleep(self.settle_delay)
        finally:
            # Collecting also restores the page's console.error
            console_errors = await self._collect_console_errors()

        report = self.validator.validate(variation, presence)
        errors = report.critical_issues + errors + [f"Console error: {e}" for e in console_errors]

        screenshot = None
        if not errors:
            variation.replace_code(report.css, report.js)
            screenshot = await self._capture_screenshot("after")

        return TestResult(
            variation_id=variation.id,
            errors=errors,
            screenshot=screenshot,
            warnings=report.warnings
        )

    async def _run_visual_qa(
        self,
        variation: Variation,
        request: str,
        before: bytes,
        after: bytes,
        state: IterationState,
        element_database: Optional[Dict[str, Any]]
    ) -> QAResult:
        try:
            qa_result = await self.judge.run_qa(
                original_request=request,
                before_screenshot=before,
                after_screenshot=after,
                iteration=state.iteration,
                previous_defects=state.previous_defects,
                generated_code=variation.code(),
                element_database=element_database,
                max_iterations=state.max_iterations
            )
        except Exception as e:
            logger.error("Visual judge raised: %s", e)
            return QAResult.error(f"Visual QA failed: {str(e)}", state.iteration)

        qa_result.iteration = state.iteration
        return qa_result

    async def _regenerate(
        self,
        variation: Variation,
        page_data: Dict[str, Any],
        feedback: str,
        result: RunResult
    ) -> bool:
        """Ask the generator for new code; abort the run when none comes back."""
        previous_code = {
            "number": variation.number,
            "name": variation.name,
            "css": variation.css,
            "js": variation.js
        }

        try:
            response = await self.generator.adjust_code(page_data, previous_code, feedback)
        except Exception as e:
            response = {"success": False, "code": None, "error": str(e)}

        result.add_usage(response.get("usage"))
        selected = select_variation_code(response.get("code"), variation.number) if response.get("success") else None

        if selected is None:
            reason = response.get("error") or "Generator returned no code"
            self._finish(result, RunOutcome.ABORTED, f"Regeneration failed: {reason}")
            return False

        css, js = selected
        variation.replace_code(css, js)
        logger.info("Regenerated code for %s", variation.name)
        return True

    async def _reset_all(self) -> bool:
        """
        Clear this controller's injections and any preview injection.

        Returns:
            False only when the harness explicitly reported a failed reset;
            timeouts and exceptions count as best effort
        """
        ok = True
        for prefix in (self.key_prefix, self.preview_prefix):
            outcome = await self._bounded(
                f"Reset of {prefix}", self.harness.reset_by_key_prefix(prefix), self.reset_timeout
            )
            if outcome is False:
                ok = False
        return ok

    async def _bounded(self, label: str, awaitable, timeout: float):
        """Await with a timeout; expiry and errors are logged, never raised."""
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %.1fs, continuing", label, timeout)
        except Exception as e:
            logger.warning("%s failed: %s, continuing", label, e)
        return None

    async def _collect_console_errors(self) -> List[str]:
        try:
            return await self.harness.collect_console_errors()
        except Exception as e:
            logger.warning("Could not collect console errors: %s", e)
            return []

    async def _capture_screenshot(self, label: str) -> Optional[bytes]:
        try:
            screenshot = await self.harness.capture_screenshot()
        except Exception as e:
            logger.warning("Could not capture %s screenshot: %s", label, e)
            return None

        if screenshot is None:
            logger.warning("No %s screenshot available", label)
        return screenshot

    def _stop_reason(self, qa_result: QAResult, state: IterationState) -> str:
        if same_defects(qa_result.defects, state.previous_defects):
            return "Same defects repeated; visual QA is not converging"
        if state.iteration >= state.max_iterations:
            return f"Reached max iterations ({state.max_iterations}) with {len(qa_result.defects)} defect(s)"
        if self.visual_iteration_cap is not None and state.iteration >= self.visual_iteration_cap:
            return f"Visual iteration cap ({self.visual_iteration_cap}) reached with {len(qa_result.defects)} defect(s)"
        return qa_result.reasoning or "Judge advised stopping"

    def _finish(self, result: RunResult, outcome: RunOutcome, reason: str):
        result.outcome = outcome
        result.reason = reason

    @staticmethod
    def _status_for(result: RunResult) -> TestStatus:
        if result.outcome == RunOutcome.ACCEPTED:
            return TestStatus.WARNING if result.visual_qa_skipped else TestStatus.PASSED
        if result.outcome == RunOutcome.NEEDS_REVIEW:
            return TestStatus.FAILED if result.technical_errors else TestStatus.WARNING
        return TestStatus.FAILED
