"""
Vision LLM judge for before/after screenshots of a variation.
"""

import asyncio
import base64
import json
import logging
import re
from collections import Counter
from typing import Any, Dict, List, Optional

from .feedback import summarize_element_database
from .llm import create_client, extract_usage
from .models import Defect, QAResult, QAStatus, Severity

logger = logging.getLogger(__name__)

VALID_STATUSES = ("PASS", "GOAL_NOT_MET", "CRITICAL_DEFECT", "MAJOR_DEFECT")
VALID_SEVERITIES = ("critical", "major")

DEFECT_TYPES = (
    "text-unreadable", "layout-broken", "element-duplicated", "poor-contrast",
    "element-missing", "brand-disconnect", "color-disharmony", "visual-hierarchy-broken"
)

SINGLE_QUERY_PATTERN = re.compile(r"""querySelector\(['"]([^'"]+)['"]\)""")
TEXT_CONTENT_PATTERN = re.compile(r"textContent\s*=")
INLINE_STYLE_PATTERN = re.compile(r"\.style\.")
FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$")


class VisionJudge:
    """Vision-capable LLM judge comparing before/after screenshots of a variation."""

    def __init__(
        self,
        provider: str,
        model_name: str,
        api_key: str,
        temperature: float = None,
        endpoint: str = None,
        max_iterations: int = 5,
        max_tokens: int = 1000
    ):
        """
        Initialize Vision judge.

        Args:
            provider: Provider name ("openai", "litellm", "cerebras", "anthropic", "google", etc.)
            model_name: Model name (e.g., "gpt-4o")
            api_key: API key for the provider
            temperature: Sampling temperature (optional, None uses model default)
            endpoint: Custom endpoint URL (optional, for LiteLLM or custom deployments)
            max_iterations: Iteration ceiling shown to the model
            max_tokens: Completion token limit
        """
        self.provider = provider
        self.model_name = model_name
        self.temperature = temperature
        self.max_iterations = max_iterations
        self.max_tokens = max_tokens
        self.client = create_client(provider, api_key, endpoint)

    async def run_qa(
        self,
        original_request: str,
        before_screenshot: Optional[bytes],
        after_screenshot: Optional[bytes],
        iteration: int,
        previous_defects: List[Defect] = None,
        generated_code: Any = None,
        element_database: Optional[Dict[str, Any]] = None,
        max_iterations: Optional[int] = None
    ) -> QAResult:
        """
        Judge one iteration of a variation.

        Args:
            original_request: Natural-language goal of the variation
            before_screenshot: Baseline screenshot (PNG bytes)
            after_screenshot: Screenshot with the variation applied
            iteration: 1-based iteration number
            previous_defects: Defects reported in the previous round
            generated_code: Code under test ({"css", "js"}, generator output, or a string)
            element_database: Optional expected page structure
            max_iterations: Iteration ceiling of this run (defaults to the judge's own)

        Returns:
            QAResult; never raises
        """
        previous_defects = previous_defects or []

        pre_screened = self.pre_screen(before_screenshot, after_screenshot, iteration)
        if pre_screened:
            logger.info("Pre-screen: %s", pre_screened.reasoning)
            return pre_screened

        if generated_code:
            code_issues = self.analyze_code_for_issues(generated_code)
            if code_issues:
                logger.info("Static code analysis found %d issue(s)", len(code_issues))
                return QAResult(
                    status=QAStatus.CRITICAL_DEFECT,
                    defects=code_issues,
                    goal_accomplished=False,
                    should_continue=True,
                    iteration=iteration,
                    reasoning="Static code analysis detected potential issues before visual inspection",
                    pre_screened=True
                )

        prompt = self.build_prompt(original_request, iteration, previous_defects, element_database, max_iterations)

        try:
            content, usage = await asyncio.to_thread(
                self._call_model, prompt, before_screenshot, after_screenshot
            )
            result = self.parse_response(content, iteration)
            result.usage = usage
            return result

        except Exception as e:
            logger.error("Visual QA failed: %s", e)
            return QAResult.error(f"Visual QA failed: {str(e)}", iteration)

    def pre_screen(
        self,
        before_screenshot: Optional[bytes],
        after_screenshot: Optional[bytes],
        iteration: int = 0
    ) -> Optional[QAResult]:
        """
        Decide obvious cases without a model call.

        Returns:
            QAResult when the screenshots are identical, otherwise None
        """
        if not before_screenshot or not after_screenshot:
            return None

        if before_screenshot != after_screenshot:
            return None

        return QAResult(
            status=QAStatus.GOAL_NOT_MET,
            defects=[Defect(
                type="element-missing",
                severity=Severity.CRITICAL,
                description="Screenshots are identical - no changes were applied to the page",
                suggested_fix="Verify selectors exist and JavaScript executed without errors"
            )],
            goal_accomplished=False,
            should_continue=True,
            iteration=iteration,
            reasoning="Before and after screenshots are identical, indicating code did not execute",
            pre_screened=True
        )

    def analyze_code_for_issues(self, generated_code: Any) -> List[Defect]:
        """
        Static red flags in generated code that predict duplicated elements.

        Args:
            generated_code: Dict with css/js, generator output with "variations",
                or a plain string

        Returns:
            List of defects (empty when nothing suspicious was found)
        """
        code = _code_to_string(generated_code)
        if not code:
            return []

        issues = []

        selector_counts = Counter(SINGLE_QUERY_PATTERN.findall(code))
        has_idempotency_check = (
            "dataset.varApplied" in code
            or "data-var-applied" in code
            or "getAttribute('data-applied')" in code
        )
        for selector, count in selector_counts.items():
            if count > 1 and not has_idempotency_check:
                issues.append(Defect(
                    type="potential-duplication",
                    severity=Severity.CRITICAL,
                    description=f'Selector "{selector}" used {count} times without idempotency check - may create duplicate elements',
                    suggested_fix="Add to JavaScript: if(element.dataset.varApplied) return; element.dataset.varApplied='1';"
                ))

        if "varApplied" not in code and "data-applied" not in code:
            multiple_modifications = (
                len(TEXT_CONTENT_PATTERN.findall(code)) > 1
                or len(INLINE_STYLE_PATTERN.findall(code)) > 3
            )
            if multiple_modifications:
                issues.append(Defect(
                    type="missing-idempotency",
                    severity=Severity.MAJOR,
                    description="Code makes multiple modifications without idempotency checks - may cause issues on re-execution",
                    suggested_fix='Add: if(element.dataset.varApplied) return; at start of each modification, then set element.dataset.varApplied="1";'
                ))

        return issues

    def build_prompt(
        self,
        original_request: str,
        iteration: int,
        previous_defects: List[Defect],
        element_database: Optional[Dict[str, Any]] = None,
        max_iterations: Optional[int] = None
    ) -> str:
        """
        Build the judgment prompt for the vision LLM.

        Args:
            original_request: Natural-language goal of the variation
            iteration: 1-based iteration number
            previous_defects: Defects to verify as fixed
            element_database: Optional expected page structure
            max_iterations: Iteration ceiling of this run (defaults to the judge's own)

        Returns:
            Formatted prompt string
        """
        ceiling = max_iterations or self.max_iterations
        element_context = ""
        if element_database:
            element_context = f"\n{summarize_element_database(element_database)}\n"

        marker = " - FINAL ITERATION" if iteration >= ceiling else ""

        previous = ""
        if iteration > 1 and previous_defects:
            previous_list = "\n".join(
                f"{i+1}. [{d.severity.value.upper()}] {d.description}" for i, d in enumerate(previous_defects)
            )
            previous = f"\n## Previous Defects (verify these are fixed)\n{previous_list}\n"

        prompt = f"""You are an expert visual QA analyst for A/B test variations. Compare the BEFORE and AFTER screenshots and decide whether the change is ready to ship.

## Original Request
{original_request}
{element_context}
## Analysis Steps
1. Count the target elements in BEFORE to establish a baseline
2. Count the same elements in AFTER and compare (watch for duplicates)
3. Verify the requested change is visible in AFTER
4. Check readability, contrast, layout and consistency with the rest of the page

## Iteration
Iteration {iteration}/{ceiling}{marker}
{previous}
## What To Ignore
- Minor color preference if still professional
- Small spacing differences if the layout is intact
- Alternative design approaches if well executed

## Response Format (strict JSON)
{{
  "status": "PASS" | "GOAL_NOT_MET" | "CRITICAL_DEFECT" | "MAJOR_DEFECT",
  "goalAccomplished": true/false,
  "defects": [
    {{
      "severity": "critical" | "major",
      "type": {" | ".join(f'"{t}"' for t in DEFECT_TYPES)},
      "description": "What element failed, what was expected, what actually happened",
      "suggestedFix": "Exact, copy-paste ready CSS or JS including the selector"
    }}
  ],
  "reasoning": "One sentence explanation",
  "shouldContinue": true/false
}}

## Termination Rules
- shouldContinue = false if status = "PASS"
- shouldContinue = false if iteration >= {ceiling} and there are no critical defects
- shouldContinue = false if the same defects repeat from the previous iteration

Analyze the screenshots now. Be precise and actionable.
"""
        return prompt

    def parse_response(self, response_text: str, iteration: int = 0) -> QAResult:
        """
        Parse and validate the model's JSON verdict.

        Args:
            response_text: Raw model output, possibly fenced
            iteration: Iteration to stamp on the result

        Returns:
            QAResult, or an ERROR result when the response violates the schema
        """
        try:
            cleaned = FENCE_PATTERN.sub("", (response_text or "").strip())
            data = json.loads(cleaned)

            if not isinstance(data, dict):
                raise ValueError("Response is not a JSON object")

            status = data.get("status")
            if status not in VALID_STATUSES:
                raise ValueError(f"Invalid status: {status}")

            if not isinstance(data.get("goalAccomplished"), bool):
                raise ValueError("goalAccomplished must be boolean")

            defects_data = data.get("defects") or []
            if not isinstance(defects_data, list):
                raise ValueError("defects must be an array")

            defects = []
            for item in defects_data:
                if not isinstance(item, dict):
                    raise ValueError("Defect must be an object")
                if item.get("severity") not in VALID_SEVERITIES:
                    raise ValueError(f"Invalid defect severity: {item.get('severity')}")
                if not item.get("type") or not item.get("description"):
                    raise ValueError("Defect missing required fields")
                defects.append(Defect.from_dict(item))

            should_continue = data.get("shouldContinue")
            if should_continue is None:
                should_continue = status != "PASS"

            return QAResult(
                status=status,
                defects=defects,
                goal_accomplished=data["goalAccomplished"],
                should_continue=bool(should_continue),
                iteration=iteration,
                reasoning=data.get("reasoning", "")
            )

        except ValueError as e:
            logger.error("Failed to parse judge response: %s", e)
            return QAResult.error(f"Failed to parse AI response: {str(e)}", iteration)

    def _call_model(
        self,
        prompt: str,
        before_screenshot: Optional[bytes],
        after_screenshot: Optional[bytes]
    ):
        content = [{"type": "text", "text": prompt}]

        if before_screenshot:
            content.append({
                "type": "image_url",
                "image_url": {"url": to_data_url(before_screenshot), "detail": "high"}
            })
            content.append({
                "type": "text",
                "text": "BEFORE Screenshot: The original page state"
            })

        if after_screenshot:
            content.append({
                "type": "image_url",
                "image_url": {"url": to_data_url(after_screenshot), "detail": "high"}
            })
            content.append({
                "type": "text",
                "text": "AFTER Screenshot: The page with the variation applied"
            })

        call_params = {
            "model": self.model_name,
            "messages": [
                {
                    "role": "system",
                    "content": "You are an expert visual QA evaluator for A/B test variations. "
                               "Respond only with the requested JSON object."
                },
                {
                    "role": "user",
                    "content": content
                }
            ],
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"}
        }

        # Only add temperature if it's specified
        if self.temperature is not None:
            call_params["temperature"] = self.temperature

        completion = self.client.chat.completions.create(**call_params)
        return completion.choices[0].message.content, extract_usage(completion)


def to_data_url(image: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(image).decode('ascii')}"


def _code_to_string(generated_code: Any) -> str:
    if isinstance(generated_code, str):
        return generated_code
    if not isinstance(generated_code, dict):
        return ""

    parts = []
    for variation in generated_code.get("variations") or []:
        parts.append(variation.get("js") or "")
        parts.append(variation.get("css") or "")
    parts.append(generated_code.get("js") or "")
    parts.append(generated_code.get("css") or "")
    parts.append(generated_code.get("globalJS") or "")
    parts.append(generated_code.get("globalCSS") or "")
    return "".join(parts)
