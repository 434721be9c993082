"""
Regeneration feedback builders.

Both builders are pure: they turn a probe or QA verdict into the
natural-language instruction handed to the code generator.
"""

from collections import Counter
from typing import Any, Dict, Optional

from .models import QAResult, Severity, TestResult


def from_technical_errors(
    test_result: TestResult,
    variation_goal: str,
    variation_name: Optional[str] = None
) -> str:
    """
    Build feedback for a variation that failed technical validation.

    Args:
        test_result: Probe result carrying the detected issues
        variation_goal: The variation's natural-language goal
        variation_name: Optional display name for the header

    Returns:
        Feedback text for the code generator
    """
    error_list = "\n".join(f"{i+1}. {err}" for i, err in enumerate(test_result.errors))
    label = variation_name or test_result.variation_id

    return f"""AUTOMATED TEST RESULTS FOR {label}:

Issues Detected:
{error_list}

Variation Goal: {variation_goal or 'See overall description'}

Please update the code to fix these issues. Use vanilla JavaScript only - do not assume jQuery or any other library is loaded on the page.
Ensure all DOM manipulations use standard APIs like querySelector, addEventListener, etc.
Return complete code with no template placeholders or markdown fences.""".strip()


def from_visual_defects(
    qa_result: QAResult,
    element_context: Optional[Dict[str, Any]] = None
) -> Optional[str]:
    """
    Build feedback from a visual QA verdict.

    Args:
        qa_result: Verdict with defects to fix
        element_context: Optional element database ({"elements": [...]})
            summarized as the expected page structure

    Returns:
        Feedback text, or None when there is nothing actionable. Callers
        must stop iterating on None rather than regenerate blindly.
    """
    if qa_result.passed:
        return None

    goal_feedback = not qa_result.goal_accomplished and bool(qa_result.reasoning)
    if not qa_result.defects and not goal_feedback:
        return None

    lines = [
        f"**VISUAL QA FEEDBACK (Iteration {qa_result.iteration}):**",
        "",
        "The following visual defects were detected and MUST be fixed in this iteration:",
        ""
    ]

    if goal_feedback:
        lines.append(f"**Goal Status**: NOT MET - {qa_result.reasoning}")
        lines.append("")

    for idx, defect in enumerate(qa_result.defects, 1):
        label = "CRITICAL" if defect.severity == Severity.CRITICAL else "MAJOR"
        lines.append(f"[{label}] **Defect {idx}** ({defect.type}): {defect.description}")
        lines.append(f"   **REQUIRED CSS/JS CHANGE**: {defect.suggested_fix or suggest_fix(defect)}")

        description = defect.description.lower()
        if "contrast" in description:
            lines.append("   **Implementation Note**: Use !important declarations to override existing styles")
        if "centered" in description:
            lines.append("   **Implementation Note**: Apply flexbox centering with !important to ensure it takes effect")
        lines.append("")

    if element_context:
        lines.append(summarize_element_database(element_context))
        lines.append("")

    lines.extend([
        "**IMPLEMENTATION RULES:**",
        "1. Implement every required change listed above",
        "2. Add !important to new CSS rules that must override existing styles",
        "3. Keep all previous working changes and add the new fixes",
        "4. Guard DOM changes so running the script twice does not duplicate elements",
        "",
        "**SUCCESS CRITERIA**: This iteration passes when ALL defects above are resolved."
    ])

    return "\n".join(lines)


def suggest_fix(defect) -> str:
    """Generic CSS hint for a defect the judge gave no fix for."""
    description = defect.description.lower()

    if "contrast" in description or "readability" in description:
        return ("Use high contrast colors: #ffffff text on dark backgrounds, "
                "#000000 text on light backgrounds, with !important declarations")

    if "vertically centered" in description or "visual balance" in description:
        return ("Add CSS: display: flex; align-items: center; justify-content: center; "
                "with !important declarations")

    if "button" in description and ("misaligned" in description or "cut off" in description):
        return ("Add CSS to the button: position: relative !important; margin: 10px !important; "
                "width: auto !important; min-width: 120px !important;")

    if "overlaps" in description or "overlapping" in description:
        return ("Separate the overlapping elements: give the foreground element a background, "
                "padding and a higher z-index with !important")

    if "positioning" in description or "alignment" in description:
        return ("Add CSS flexbox alignment: display: flex !important; align-items: center !important; "
                "justify-content: center !important;")

    if "text" in description and "size" in description:
        return "Add CSS: font-size: 1.2em; line-height: 1.4; font-weight: 500; with !important declarations"

    if "color" in description:
        return ("Update color with: color: #ffffff !important; (dark backgrounds) "
                "or color: #000000 !important; (light backgrounds)")

    if "layout" in description or "broken" in description:
        return "Restore layout with: display: flex; width: 100%; position: relative; with proper flex properties"

    return "Add specific CSS styling with !important declarations to override existing styles and fix the issue"


def summarize_element_database(element_database: Dict[str, Any]) -> str:
    """
    Summarize an element database as the expected page structure.

    Args:
        element_database: Dict with an "elements" list of {"tag", "classes"}

    Returns:
        Markdown summary text
    """
    elements = (element_database or {}).get("elements") or []
    if not elements:
        return "No element database available"

    counts = Counter(el.get("tag") or "unknown" for el in elements)
    summary = ["**EXPECTED PAGE STRUCTURE:**"]
    for tag, count in counts.items():
        summary.append(f"- {tag}: {count} element(s)")

    buttons = [
        el for el in elements
        if el.get("tag") == "button" or "btn" in (el.get("classes") or [])
    ]
    if buttons:
        summary.append("")
        summary.append("**KEY INTERACTIVE ELEMENTS:**")
        summary.append(f"- {len(buttons)} button(s)/CTA(s)")

    return "\n".join(summary)
