"""
Data model for the variation test-and-refine engine.
"""

import time
from collections import Counter
from enum import Enum
from typing import Any, Dict, List, Optional


class TestStatus(str, Enum):
    """Lifecycle status of a variation under test."""

    __test__ = False

    PENDING = "pending"
    TESTING = "testing"
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"


class Severity(str, Enum):
    """Severity of a visual defect."""

    CRITICAL = "critical"
    MAJOR = "major"


class QAStatus(str, Enum):
    """Verdict of a visual QA round (wire values match the judge's JSON)."""

    PASS = "PASS"
    GOAL_NOT_MET = "GOAL_NOT_MET"
    CRITICAL_DEFECT = "CRITICAL_DEFECT"
    MAJOR_DEFECT = "MAJOR_DEFECT"
    ERROR = "ERROR"


class RunOutcome(str, Enum):
    """Terminal state of a variation run."""

    ACCEPTED = "accepted"
    NEEDS_REVIEW = "needs_review"
    ABORTED = "aborted"


class Defect:
    """A single visual defect reported by the judge."""

    def __init__(
        self,
        type: str,
        severity: Severity,
        description: str,
        suggested_fix: Optional[str] = None
    ):
        """
        Initialize defect.

        Args:
            type: Defect category (e.g., "poor-contrast", "layout-broken")
            severity: Severity.CRITICAL or Severity.MAJOR
            description: What failed and why
            suggested_fix: Optional copy-paste ready CSS/JS fix
        """
        self.type = type
        self.severity = Severity(severity)
        self.description = description
        self.suggested_fix = suggested_fix

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Defect":
        """Build a defect from the judge's JSON shape."""
        return cls(
            type=data.get("type", "issue"),
            severity=data.get("severity", Severity.MAJOR),
            description=data.get("description", ""),
            suggested_fix=data.get("suggestedFix")
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "type": self.type,
            "severity": self.severity.value,
            "description": self.description,
            "suggestedFix": self.suggested_fix
        }

    def __repr__(self):
        return f"Defect(type={self.type}, severity={self.severity.value})"


def defect_signature(defects: List[Defect]) -> Counter:
    """
    Structural signature of a defect list.

    Two lists share a signature when they have the same number of defects and
    the same multiset of (type, severity) pairs. Descriptions are ignored
    because the judge rewords them between rounds.
    """
    return Counter((d.type, d.severity.value) for d in defects or [])


def same_defects(current: List[Defect], previous: List[Defect]) -> bool:
    """Check whether two non-empty defect lists have the same signature."""
    if not current or not previous:
        return False
    if len(current) != len(previous):
        return False
    return defect_signature(current) == defect_signature(previous)


class QAResult:
    """Verdict of one visual QA round."""

    def __init__(
        self,
        status: QAStatus,
        defects: List[Defect] = None,
        goal_accomplished: bool = False,
        should_continue: bool = False,
        iteration: int = 0,
        reasoning: str = "",
        usage: Optional[Dict[str, int]] = None,
        pre_screened: bool = False
    ):
        """
        Initialize QA result.

        Args:
            status: Overall verdict
            defects: Defects found (empty on PASS)
            goal_accomplished: Whether the original request is visibly met
            should_continue: The judge's continuation hint
            iteration: Iteration (1-based) this verdict belongs to
            reasoning: One sentence explanation from the judge
            usage: Token usage of the model call, if any
            pre_screened: True when decided locally without a model call
        """
        self.status = QAStatus(status)
        self.defects = list(defects or [])
        self.goal_accomplished = goal_accomplished
        self.should_continue = should_continue
        self.iteration = iteration
        self.reasoning = reasoning
        self.usage = usage
        self.pre_screened = pre_screened

    @property
    def passed(self) -> bool:
        return self.status == QAStatus.PASS

    @classmethod
    def error(cls, reason: str, iteration: int = 0) -> "QAResult":
        """Result used whenever the judge itself could not produce a verdict."""
        return cls(
            status=QAStatus.ERROR,
            defects=[],
            goal_accomplished=False,
            should_continue=False,
            iteration=iteration,
            reasoning=reason
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "status": self.status.value,
            "defects": [d.to_dict() for d in self.defects],
            "goalAccomplished": self.goal_accomplished,
            "shouldContinue": self.should_continue,
            "iteration": self.iteration,
            "reasoning": self.reasoning,
            "usage": self.usage,
            "preScreened": self.pre_screened
        }


class TestResult:
    """Outcome of one apply-and-probe attempt. Treated as immutable."""

    __test__ = False

    def __init__(
        self,
        variation_id: str,
        errors: List[str] = None,
        screenshot: Optional[bytes] = None,
        warnings: List[str] = None,
        timestamp: float = None
    ):
        self.variation_id = variation_id
        self.timestamp = timestamp if timestamp is not None else time.time()
        self.errors = tuple(errors or ())
        self.warnings = tuple(warnings or ())
        self.screenshot = screenshot

    @property
    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variationId": self.variation_id,
            "timestamp": self.timestamp,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "hasScreenshot": self.screenshot is not None
        }


class Variation:
    """A named bundle of CSS/JS realizing one arm of an experiment."""

    def __init__(
        self,
        id: str,
        name: str,
        css: Optional[str] = None,
        js: Optional[str] = None,
        description: str = "",
        number: Optional[int] = None
    ):
        """
        Initialize variation.

        Args:
            id: Stable identifier, also used to build the injection key
            name: Display name
            css: Stylesheet to inject
            js: Script to run
            description: Natural-language goal of this variation
            number: 1-based position inside the experiment
        """
        self.id = str(id)
        self.name = name
        self.css = css
        self.js = js
        self.description = description
        self.number = number
        self.test_status = TestStatus.PENDING
        self.qa_history: List[QAResult] = []

    def replace_code(self, css: Optional[str], js: Optional[str]):
        """Swap in a whole new code payload."""
        self.css = css
        self.js = js

    def code(self) -> Dict[str, Optional[str]]:
        return {"css": self.css, "js": self.js}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "number": self.number,
            "description": self.description,
            "css": self.css,
            "js": self.js,
            "testStatus": self.test_status.value,
            "qaHistory": [qa.to_dict() for qa in self.qa_history]
        }

    def __repr__(self):
        return f"Variation(id={self.id}, name={self.name}, status={self.test_status.value})"


class CancellationToken:
    """
    Cooperative stop signal for a run.

    The owner of the run calls cancel(); the controller only reads the flag,
    and only at iteration boundaries.
    """

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Stopped by user"):
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class IterationState:
    """Process-local state for one call to run a variation to convergence."""

    def __init__(self, max_iterations: int, token: CancellationToken):
        self.iteration = 0
        self.max_iterations = max_iterations
        self.previous_defects: List[Defect] = []
        self.start_time = time.monotonic()
        self._token = token

    @property
    def active(self) -> bool:
        return not self._token.cancelled

    @property
    def cancel_reason(self) -> str:
        return self._token.reason or "Cancelled"

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time


class RunResult:
    """What a run reports back to its caller."""

    def __init__(self, variation: Variation):
        self.variation = variation
        self.outcome: Optional[RunOutcome] = None
        self.reason = ""
        self.iterations = 0
        self.technical_errors: List[str] = []
        self.remaining_defects: List[Defect] = []
        self.test_results: List[TestResult] = []
        self.visual_qa_skipped = False
        self.elapsed = 0.0
        self.usage = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}

    @property
    def qa_history(self) -> List[QAResult]:
        return self.variation.qa_history

    def add_usage(self, usage: Optional[Dict[str, Any]]):
        """Accumulate token counts from a model call."""
        if not usage:
            return
        for key in self.usage:
            value = usage.get(key)
            if isinstance(value, (int, float)):
                self.usage[key] += int(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variationId": self.variation.id,
            "name": self.variation.name,
            "outcome": self.outcome.value if self.outcome else None,
            "testStatus": self.variation.test_status.value,
            "reason": self.reason,
            "iterations": self.iterations,
            "technicalErrors": list(self.technical_errors),
            "remainingDefects": [d.to_dict() for d in self.remaining_defects],
            "visualQASkipped": self.visual_qa_skipped,
            "elapsed": round(self.elapsed, 2),
            "usage": dict(self.usage)
        }
