"""
Code generation service over an OpenAI-compatible chat model.
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from .feedback import summarize_element_database
from .llm import create_client, extract_usage

logger = logging.getLogger(__name__)

FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$")

OUTPUT_FORMAT = """## Output Format (strict JSON)
Respond with valid JSON only. No markdown, no code fences, no text before or after the object.

{
  "variations": [
    {
      "number": 1,
      "name": "Descriptive Name (2-5 words)",
      "css": "CSS code or empty string",
      "js": "JavaScript code or empty string"
    }
  ],
  "globalCSS": "Shared CSS or empty string",
  "globalJS": "Shared JavaScript helper functions or empty string"
}"""

CODING_RULES = """## Coding Rules
1. Use vanilla JavaScript and standard DOM APIs only; no library is loaded on the page
2. waitForElement(selector, callback) is provided; call it, do not define it
3. Only use selectors that exist on the page or that your own code creates
4. Guard every modification so running the script twice changes nothing:
   if (el.dataset.varApplied) return; el.dataset.varApplied = '1';
5. Put colors and sizes in CSS with !important, text and behavior in JS
6. Never use document.write or eval"""


class CodeGenerator:
    """LLM-backed generator for variation CSS/JS."""

    def __init__(
        self,
        provider: str,
        model_name: str,
        api_key: str,
        temperature: float = None,
        endpoint: str = None,
        max_tokens: int = 4000
    ):
        """
        Initialize code generator.

        Args:
            provider: Provider name ("openai", "litellm", "cerebras", "anthropic", "google", etc.)
            model_name: Model name (e.g., "gpt-4o")
            api_key: API key for the provider
            temperature: Sampling temperature (optional, None uses model default)
            endpoint: Custom endpoint URL (optional, for LiteLLM or custom deployments)
            max_tokens: Completion token limit
        """
        self.provider = provider
        self.model_name = model_name
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = create_client(provider, api_key, endpoint)

    async def generate_code(
        self,
        page_data: Dict[str, Any],
        request: str,
        variations: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """
        Generate code for one or more variations from scratch.

        Args:
            page_data: Page context (url, title, element_database)
            request: Overall natural-language request
            variations: Variation stubs with number, name and description

        Returns:
            Dict with:
            - success: bool
            - code: {"variations": [...], "globalCSS", "globalJS"} or None
            - usage: token usage dict or None
            - error: str (if any)
        """
        prompt = self.build_generation_prompt(page_data, request, variations)
        return await self._complete(prompt)

    async def adjust_code(
        self,
        page_data: Dict[str, Any],
        previous_code: Dict[str, Any],
        feedback: str
    ) -> Dict[str, Any]:
        """
        Regenerate code from the previous attempt plus feedback.

        Args:
            page_data: Page context (url, title, element_database)
            previous_code: {"number", "name", "css", "js"} of the attempt being fixed
            feedback: Instruction built from technical issues or visual defects

        Returns:
            Same shape as generate_code()
        """
        prompt = self.build_adjustment_prompt(page_data, previous_code, feedback)
        return await self._complete(prompt)

    def build_generation_prompt(
        self,
        page_data: Dict[str, Any],
        request: str,
        variations: List[Dict[str, Any]]
    ) -> str:
        variation_list = "\n".join(
            f"{v.get('number', i+1)}. {v.get('name', '')}: {v.get('description', '')}"
            for i, v in enumerate(variations)
        )

        return f"""You are an expert A/B testing developer. Write CSS and JavaScript that implement each variation on the live page.

{_page_context(page_data)}
## Request
{request}

## Variations
{variation_list}

{CODING_RULES}

{OUTPUT_FORMAT}
"""

    def build_adjustment_prompt(
        self,
        page_data: Dict[str, Any],
        previous_code: Dict[str, Any],
        feedback: str
    ) -> str:
        return f"""You are an expert A/B testing developer. The code below was applied to the live page and automated QA found problems. Fix them.

{_page_context(page_data)}
## Current Code (variation {previous_code.get('number') or 1}: {previous_code.get('name', '')})
CSS:
{previous_code.get('css') or '(none)'}

JavaScript:
{previous_code.get('js') or '(none)'}

## Feedback
{feedback}

Return the COMPLETE corrected code: keep everything that works and change only what the feedback requires.

{CODING_RULES}

{OUTPUT_FORMAT}
"""

    async def _complete(self, prompt: str) -> Dict[str, Any]:
        try:
            content, usage = await asyncio.to_thread(self._call_model, prompt)
            code = self.parse_code(content)
            return {
                "success": True,
                "code": code,
                "usage": usage,
                "error": None
            }

        except Exception as e:
            logger.error("Code generation failed: %s", e)
            return {
                "success": False,
                "code": None,
                "usage": None,
                "error": f"Code generation failed: {str(e)}"
            }

    def parse_code(self, response_text: str) -> Dict[str, Any]:
        """
        Parse the model's JSON code object.

        Raises:
            ValueError: If the response is not a code object with variations
        """
        cleaned = FENCE_PATTERN.sub("", (response_text or "").strip())
        data = json.loads(cleaned)

        if not isinstance(data, dict) or not isinstance(data.get("variations"), list):
            raise ValueError("Response has no variations array")
        if not data["variations"]:
            raise ValueError("Response contains no variations")

        return {
            "variations": [
                {
                    "number": v.get("number", i + 1),
                    "name": v.get("name", f"Variation {i + 1}"),
                    "css": v.get("css") or "",
                    "js": v.get("js") or ""
                }
                for i, v in enumerate(data["variations"]) if isinstance(v, dict)
            ],
            "globalCSS": data.get("globalCSS") or "",
            "globalJS": data.get("globalJS") or ""
        }

    def _call_model(self, prompt: str):
        call_params = {
            "model": self.model_name,
            "messages": [
                {
                    "role": "system",
                    "content": "You are an expert front-end developer writing A/B test variation code. "
                               "Respond only with the requested JSON object."
                },
                {
                    "role": "user",
                    "content": prompt
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


def select_variation_code(
    code: Optional[Dict[str, Any]],
    number: Optional[int] = None
) -> Optional[Tuple[str, str]]:
    """
    Pick one variation out of generator output.

    Global CSS/JS is prepended so helper functions exist before the
    variation script runs.

    Args:
        code: Generator output
        number: Variation number to pick; falls back to the first variation

    Returns:
        (css, js) tuple, or None when the output holds no variation
    """
    if not code or not code.get("variations"):
        return None

    variations = code["variations"]
    chosen = next((v for v in variations if number is not None and v.get("number") == number), variations[0])

    css = "\n".join(part for part in (code.get("globalCSS"), chosen.get("css")) if part)
    js = "\n".join(part for part in (code.get("globalJS"), chosen.get("js")) if part)
    return css, js


def _page_context(page_data: Optional[Dict[str, Any]]) -> str:
    page_data = page_data or {}
    lines = ["## Page"]
    if page_data.get("url"):
        lines.append(f"URL: {page_data['url']}")
    if page_data.get("title"):
        lines.append(f"Title: {page_data['title']}")
    if page_data.get("element_database"):
        lines.append("")
        lines.append(summarize_element_database(page_data["element_database"]))
    return "\n".join(lines) + "\n"
