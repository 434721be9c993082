"""
Technical validation of generated variation code.

Checks that do not need visual judgment: AI formatting artifacts, unresolved
template placeholders, unsafe APIs, and DOM selectors the script depends on
that are missing from the live page.

Selector checks are split in two so the validator stays free of browser
calls: selectors_to_probe() lists what must be looked up on the page, the
caller probes the page, and validate() interprets the answers.
"""

import logging
import re
from typing import Dict, List, NamedTuple, Optional, Set

from .models import Variation

logger = logging.getLogger(__name__)


FENCE_PATTERN = re.compile(r"```[A-Za-z0-9_+-]*[ \t]*\n?")
MUSTACHE_PATTERN = re.compile(r"\{\{\s*[A-Za-z_][\w.\-]*\s*\}\}")
# ${lowercase} is a legitimate JS template literal; ${UPPER_CASE} is an unfilled slot
SLOT_PATTERN = re.compile(r"\$\{[A-Z_][A-Z0-9_]*\}")
BLANK_LINES_PATTERN = re.compile(r"\n\s*\n")

DOCUMENT_WRITE_PATTERN = re.compile(r"\bdocument\s*\.\s*write(?:ln)?\s*\(")
EVAL_PATTERN = re.compile(r"(?<![\w$])eval\s*\(")

QUERY_PATTERN = re.compile(
    r"""\b(querySelectorAll|querySelector|waitForElement)\s*\(\s*(['"`])((?:(?!\2).)+?)\2""",
    re.DOTALL
)
ID_LOOKUP_PATTERN = re.compile(r"""\bgetElementById\s*\(\s*(['"`])([^'"`]+)\1""")
CLASS_LOOKUP_PATTERN = re.compile(r"""\bgetElementsByClassName\s*\(\s*(['"`])([^'"`]+)\1""")

CREATE_ELEMENT_PATTERN = re.compile(
    r"(?:\b(?:const|let|var)\s+)?([A-Za-z_$][\w$]*)\s*=\s*document\.createElement\s*\("
)
CLASS_NAME_PATTERN = re.compile(r"""([A-Za-z_$][\w$]*)\.className\s*=\s*(['"`])([^'"`]*)\2""")
CLASS_LIST_PATTERN = re.compile(r"([A-Za-z_$][\w$]*)\.classList\.add\s*\(([^)]*)\)")
CLASS_ATTRIBUTE_PATTERN = re.compile(
    r"""([A-Za-z_$][\w$]*)\.setAttribute\s*\(\s*['"]class['"]\s*,\s*(['"`])([^'"`]*)\2"""
)
ID_ASSIGN_PATTERN = re.compile(r"""([A-Za-z_$][\w$]*)\.id\s*=\s*(['"`])([^'"`]+)\2""")
STRING_LITERAL_PATTERN = re.compile(r"""(['"`])([^'"`]*)\1""")
MARKUP_INJECTION_PATTERN = re.compile(r"\.(?:innerHTML|outerHTML)\s*[+]?=|\binsertAdjacentHTML\s*\(")
MARKUP_CLASS_PATTERN = re.compile(r"""\bclass\s*=\s*\\?["']([^"'\\]+)\\?["']""")
MARKUP_ID_PATTERN = re.compile(r"""\bid\s*=\s*\\?["']([^"'\\]+)\\?["']""")

SELECTOR_CLASS_PATTERN = re.compile(r"\.(-?[_a-zA-Z][\w-]*)")
SELECTOR_ID_PATTERN = re.compile(r"#(-?[_a-zA-Z][\w-]*)")
IMPORTANT_PATTERN = re.compile(r"!important")

MAX_IMPORTANT_DECLARATIONS = 4


class CleanedCode(NamedTuple):
    """Code after normalization, plus the issues normalization uncovered."""

    css: Optional[str]
    js: Optional[str]
    issues: List[str]


class SelectorReference(NamedTuple):
    """One selector literal found in a DOM lookup call."""

    selector: str
    start: int
    end: int


class ValidationReport:
    """Result of technical validation."""

    def __init__(
        self,
        critical_issues: List[str],
        warnings: List[str],
        css: Optional[str],
        js: Optional[str]
    ):
        """
        Args:
            critical_issues: Problems that block acceptance and trigger regeneration
            warnings: Non-blocking observations
            css: Normalized CSS
            js: Normalized JS
        """
        self.critical_issues = critical_issues
        self.warnings = warnings
        self.css = css
        self.js = js

    @property
    def passed(self) -> bool:
        return not self.critical_issues

    def to_dict(self):
        return {
            "criticalIssues": list(self.critical_issues),
            "warnings": list(self.warnings)
        }


def _clean_block(code: Optional[str]) -> Optional[str]:
    if code is None:
        return None
    code = FENCE_PATTERN.sub("", code)
    code = MUSTACHE_PATTERN.sub("", code)
    code = SLOT_PATTERN.sub("", code)
    code = BLANK_LINES_PATTERN.sub("\n", code)
    return code.strip()


def _line_bounds(source: str, start: int, end: int):
    line_start = source.rfind("\n", 0, start) + 1
    line_end = source.find("\n", end)
    if line_end == -1:
        line_end = len(source)
    return line_start, line_end


class TechnicalValidator:
    """Static and page-backed checks on a code variation."""

    def clean_code(self, css: Optional[str], js: Optional[str]) -> CleanedCode:
        """
        Strip AI formatting artifacts from a code payload.

        Placeholders are detected before they are stripped: their presence
        means the model returned incomplete output, so each one found is
        reported as an issue even though the cleaned code no longer has it.

        Args:
            css: Raw CSS as returned by the generator
            js: Raw JS as returned by the generator

        Returns:
            CleanedCode with normalized css/js and placeholder issues
        """
        issues = []
        for label, code in (("CSS", css), ("JavaScript", js)):
            if not code:
                continue
            found = MUSTACHE_PATTERN.findall(code) + SLOT_PATTERN.findall(code)
            if found:
                unique = sorted(set(found))
                issues.append(
                    f"Template syntax found in {label} - AI returned incomplete code: {', '.join(unique)}"
                )

        return CleanedCode(css=_clean_block(css), js=_clean_block(js), issues=issues)

    def extract_selectors(self, js: Optional[str]) -> List[SelectorReference]:
        """
        Find selector literals passed to DOM lookup APIs.

        Selectors built at runtime (template literals with ${...}) are
        skipped since their value cannot be known statically.
        """
        if not js:
            return []

        references = []
        for match in QUERY_PATTERN.finditer(js):
            selector = match.group(3).strip()
            if not selector or "${" in selector:
                continue
            references.append(SelectorReference(selector, match.start(), match.end()))

        for match in ID_LOOKUP_PATTERN.finditer(js):
            element_id = match.group(2).strip()
            if element_id and "${" not in element_id:
                references.append(SelectorReference(f"#{element_id}", match.start(), match.end()))

        for match in CLASS_LOOKUP_PATTERN.finditer(js):
            classes = match.group(2).split()
            if classes and "${" not in match.group(2):
                selector = "".join(f".{cls}" for cls in classes)
                references.append(SelectorReference(selector, match.start(), match.end()))

        references.sort(key=lambda ref: ref.start)
        return references

    def dynamic_tokens(self, js: Optional[str]) -> Set[str]:
        """
        Class and id tokens the script itself puts on the page.

        Returns tokens prefixed the way they appear in selectors (".name" for
        classes, "#name" for ids) so they can be compared directly.
        """
        if not js:
            return set()

        created = {m.group(1) for m in CREATE_ELEMENT_PATTERN.finditer(js)}
        tokens = set()

        for match in CLASS_NAME_PATTERN.finditer(js):
            if match.group(1) in created:
                tokens.update(f".{cls}" for cls in match.group(3).split())

        for match in CLASS_ATTRIBUTE_PATTERN.finditer(js):
            if match.group(1) in created:
                tokens.update(f".{cls}" for cls in match.group(3).split())

        for match in CLASS_LIST_PATTERN.finditer(js):
            if match.group(1) in created:
                for literal in STRING_LITERAL_PATTERN.finditer(match.group(2)):
                    tokens.update(f".{cls}" for cls in literal.group(2).split())

        for match in ID_ASSIGN_PATTERN.finditer(js):
            if match.group(1) in created:
                tokens.add(f"#{match.group(3).strip()}")

        # Markup injected as HTML strings creates elements too
        if MARKUP_INJECTION_PATTERN.search(js):
            for match in MARKUP_CLASS_PATTERN.finditer(js):
                tokens.update(f".{cls}" for cls in match.group(1).split())
            for match in MARKUP_ID_PATTERN.finditer(js):
                tokens.add(f"#{match.group(1).strip()}")

        # Classes put on elements the pattern above could not trace back to
        # createElement still count when the script creates elements and the
        # same class name shows up again elsewhere in the source.
        if "createElement" in js:
            for match in CLASS_NAME_PATTERN.finditer(js):
                for cls in match.group(3).split():
                    if len(re.findall(rf"(?<![\w-]){re.escape(cls)}(?![\w-])", js)) > 1:
                        tokens.add(f".{cls}")

        return tokens

    def is_dynamic_selector(self, selector: str, tokens: Set[str]) -> bool:
        """Check whether a selector references anything the script creates."""
        if not tokens:
            return False
        referenced = {f".{cls}" for cls in SELECTOR_CLASS_PATTERN.findall(selector)}
        referenced.update(f"#{el_id}" for el_id in SELECTOR_ID_PATTERN.findall(selector))
        return bool(referenced & tokens)

    def selectors_to_probe(self, js: Optional[str]) -> List[str]:
        """
        Static selectors whose existence must be checked on the live page.

        Returns:
            Unique selectors in source order, excluding dynamically created ones
        """
        tokens = self.dynamic_tokens(js)
        selectors = []
        for reference in self.extract_selectors(js):
            if reference.selector in selectors:
                continue
            if self.is_dynamic_selector(reference.selector, tokens):
                continue
            selectors.append(reference.selector)
        return selectors

    def has_fallback_guard(self, js: str, reference: SelectorReference) -> bool:
        """
        Best-effort check that a lookup tolerates a missing element.

        Recognized guards: a || alternative chained directly onto the lookup,
        optional chaining, && or a ternary on the lookup result, a lookup
        inside an if/while condition, and the same guards on the variable the
        result is bound to. This is a heuristic; when unsure it answers False
        so the lookup stays blocking.
        """
        line_start, line_end = _line_bounds(js, reference.start, reference.end)
        before = js[line_start:reference.start]
        after = js[reference.end:line_end]

        if re.match(r"\s*\)\s*(?:\|\||&&|\?)", after):
            return True
        if re.search(r"\|\|\s*(?:[\w$]+\s*\.\s*)*$", before):
            return True

        condition = None
        for condition in re.finditer(r"\b(?:if|while)\s*\(", before):
            pass
        if condition:
            inside = before[condition.end():]
            if inside.count("(") >= inside.count(")"):
                return True

        binding = re.search(r"(?<![.\w$])([A-Za-z_$][\w$]*)\s*=\s*[^=]*$", before)
        if not binding:
            return False

        name = re.escape(binding.group(1))
        rest = js[reference.end:]
        guards = (
            rf"\bif\s*\([^)]*\b{name}\b",
            rf"\b{name}\s*&&",
            rf"\b{name}\s*\?\.",
            rf"\b{name}\s*\?(?!\?)[^:]+:",
            rf"\b{name}\s*\?\?",
            rf"\b{name}\s*\|\|"
        )
        return any(re.search(pattern, rest) for pattern in guards)

    def validate(
        self,
        variation: Variation,
        selector_presence: Optional[Dict[str, Optional[bool]]] = None
    ) -> ValidationReport:
        """
        Validate a variation's current code.

        Args:
            variation: Variation whose css/js is checked
            selector_presence: Result of probing selectors_to_probe() on the
                live page; True if present, False if absent, None if the
                selector is invalid. Selectors missing from the mapping are
                not judged.

        Returns:
            ValidationReport with critical issues, warnings and cleaned code
        """
        cleaned = self.clean_code(variation.css, variation.js)
        critical = list(cleaned.issues)
        warnings = []

        css = variation.css or ""
        js = variation.js or ""

        if len(IMPORTANT_PATTERN.findall(css)) > MAX_IMPORTANT_DECLARATIONS:
            warnings.append("Many !important declarations detected")

        if DOCUMENT_WRITE_PATTERN.search(js):
            critical.append("Use of deprecated document.write()")
        if EVAL_PATTERN.search(js):
            critical.append("Use of potentially unsafe eval()")

        if "querySelector" in js:
            has_error_handling = any(
                marker in js for marker in ("try", "catch", "if (", "if(", "?.", "waitForElement")
            )
            if not has_error_handling:
                warnings.append("Consider adding error handling for DOM queries")

        if selector_presence:
            critical_selectors, guarded = self._check_selectors(cleaned.js or "", selector_presence)
            critical.extend(critical_selectors)
            warnings.extend(guarded)

        if critical:
            logger.info("Technical validation of %s found %d critical issue(s)", variation.name, len(critical))
        for warning in warnings:
            logger.debug("Technical warning for %s: %s", variation.name, warning)

        return ValidationReport(critical, warnings, cleaned.css, cleaned.js)

    def _check_selectors(self, js: str, presence: Dict[str, Optional[bool]]):
        tokens = self.dynamic_tokens(js)
        critical = []
        guarded = []

        lookups: Dict[str, List[SelectorReference]] = {}
        for reference in self.extract_selectors(js):
            lookups.setdefault(reference.selector, []).append(reference)

        for selector, references in lookups.items():
            if selector not in presence or self.is_dynamic_selector(selector, tokens):
                continue

            found = presence[selector]
            if found is None:
                critical.append(f"Invalid selector: {selector}")
            elif not found:
                # Guarded only if every lookup of the selector is guarded
                if all(self.has_fallback_guard(js, ref) for ref in references):
                    guarded.append(f"Element not found (lookup has a fallback): {selector}")
                else:
                    critical.append(f"Element not found: {selector}")

        return critical, guarded
