"""
Page harness: the browser boundary the iteration controller drives.

PageHarness is the interface; BrowserHarness implements it over the
browser-control server by evaluating small scripts in one tab.
"""

import asyncio
import base64
import json
import logging
from typing import Dict, List, Optional

from .api_client import APIClient

logger = logging.getLogger(__name__)

KEY_ATTRIBUTE = "data-variation-key"
CONSOLE_STORE = "__variationQaConsole"


class HarnessError(Exception):
    """Raised when the harness cannot talk to the page."""


class PageHarness:
    """
    Browser tab isolation used by the iteration controller.

    All methods are coroutines. reload_page() is optional; implementations
    that cannot reload leave supports_reload False.
    """

    supports_reload = False

    async def apply_code(self, key: str, css: Optional[str], js: Optional[str]) -> Dict:
        """
        Inject a code payload under the given key.

        Returns:
            Dict with success, logs (list of str) and error
        """
        raise NotImplementedError

    async def reset_by_key_prefix(self, prefix: str) -> bool:
        """Remove everything injected under keys starting with prefix. Idempotent."""
        raise NotImplementedError

    async def capture_screenshot(self) -> Optional[bytes]:
        """Screenshot of the tab, or None when capture failed."""
        raise NotImplementedError

    async def install_console_shim(self):
        """Start recording console.error calls and uncaught page errors."""
        raise NotImplementedError

    async def collect_console_errors(self) -> List[str]:
        """Return recorded console errors and restore the original console.error."""
        raise NotImplementedError

    async def query_selectors(self, selectors: List[str]) -> Dict[str, Optional[bool]]:
        """
        Probe selectors on the live page.

        Returns:
            Mapping selector -> True (present), False (absent), None (invalid selector)
        """
        raise NotImplementedError

    async def reload_page(self) -> bool:
        raise NotImplementedError


def build_apply_script(key: str, css: Optional[str], js: Optional[str]) -> str:
    """
    JavaScript that injects css as a keyed <style> and runs js in a try/catch.

    The script body receives a waitForElement(selector, callback) helper.
    """
    return f"""(() => {{
  const key = {json.dumps(key)};
  const css = {json.dumps(css or "")};
  const js = {json.dumps(js or "")};
  const logs = [];
  const waitForElement = (selector, callback, timeout) => {{
    const found = document.querySelector(selector);
    if (found) {{
      callback(found);
      return;
    }}
    const observer = new MutationObserver(() => {{
      const el = document.querySelector(selector);
      if (el) {{
        observer.disconnect();
        callback(el);
      }}
    }});
    observer.observe(document.documentElement, {{childList: true, subtree: true}});
    setTimeout(() => observer.disconnect(), timeout || 10000);
  }};
  try {{
    if (css) {{
      const style = document.createElement('style');
      style.setAttribute('{KEY_ATTRIBUTE}', key);
      style.textContent = css;
      (document.head || document.documentElement).appendChild(style);
      logs.push('CSS applied (' + css.length + ' chars)');
    }}
    if (js) {{
      const marker = document.createElement('meta');
      marker.setAttribute('{KEY_ATTRIBUTE}', key);
      (document.head || document.documentElement).appendChild(marker);
      new Function('waitForElement', js)(waitForElement);
      logs.push('JS executed (' + js.length + ' chars)');
    }}
    return JSON.stringify({{success: true, logs: logs, error: null}});
  }} catch (e) {{
    logs.push('Error: ' + (e && e.message ? e.message : String(e)));
    return JSON.stringify({{success: false, logs: logs, error: e && e.message ? e.message : String(e)}});
  }}
}})()"""


def build_reset_script(prefix: str) -> str:
    """JavaScript that removes every node injected under a key prefix."""
    return f"""(() => {{
  const prefix = {json.dumps(prefix)};
  const nodes = Array.from(document.querySelectorAll('[{KEY_ATTRIBUTE}]'))
    .filter(node => (node.getAttribute('{KEY_ATTRIBUTE}') || '').startsWith(prefix));
  nodes.forEach(node => node.remove());
  return nodes.length;
}})()"""


def build_shim_script() -> str:
    return f"""(() => {{
  if (window.{CONSOLE_STORE}) {{
    window.{CONSOLE_STORE}.errors = [];
    return true;
  }}
  const store = {{original: console.error, errors: []}};
  const describe = (value) => {{
    if (typeof value === 'string') return value;
    if (value && value.message) return value.message;
    try {{ return JSON.stringify(value); }} catch (e) {{ return String(value); }}
  }};
  console.error = function(...args) {{
    store.errors.push(args.map(describe).join(' '));
    return store.original.apply(console, args);
  }};
  store.onError = (event) => store.errors.push('Uncaught: ' + (event.message || 'unknown error'));
  window.addEventListener('error', store.onError);
  window.{CONSOLE_STORE} = store;
  return true;
}})()"""


def build_collect_script() -> str:
    return f"""(() => {{
  const store = window.{CONSOLE_STORE};
  if (!store) return JSON.stringify([]);
  console.error = store.original;
  window.removeEventListener('error', store.onError);
  delete window.{CONSOLE_STORE};
  return JSON.stringify(store.errors);
}})()"""


def build_query_script(selectors: List[str]) -> str:
    return f"""(() => {{
  const selectors = {json.dumps(list(selectors))};
  const found = {{}};
  selectors.forEach(selector => {{
    try {{
      found[selector] = document.querySelector(selector) !== null;
    }} catch (e) {{
      found[selector] = null;
    }}
  }});
  return JSON.stringify(found);
}})()"""


def decode_data_url(image_data: Optional[str]) -> Optional[bytes]:
    """Decode a base64 data URL (or bare base64) into bytes."""
    if not image_data:
        return None
    if image_data.startswith("data:"):
        image_data = image_data.split(",", 1)[-1]
    try:
        return base64.b64decode(image_data)
    except ValueError:
        return None


class BrowserHarness(PageHarness):
    """PageHarness over the browser-control server for a single tab."""

    supports_reload = True

    def __init__(self, api_client: APIClient, client_id: str, tab_id: str, full_page: bool = True):
        """
        Initialize browser harness.

        Args:
            api_client: APIClient for the browser-control server
            client_id: Browser client ID
            tab_id: Tab under test; the harness is its only writer
            full_page: Capture full-page screenshots
        """
        self.api_client = api_client
        self.client_id = client_id
        self.tab_id = tab_id
        self.full_page = full_page

    async def _evaluate(self, expression: str):
        result = await asyncio.to_thread(
            self.api_client.execute_javascript,
            client_id=self.client_id,
            tab_id=self.tab_id,
            expression=expression,
            return_by_value=True,
            await_promise=False
        )

        if not result["success"]:
            raise HarnessError(result.get("error") or "JavaScript execution failed")
        if result.get("exceptionDetails"):
            raise HarnessError(f"JavaScript threw exception: {result['exceptionDetails']}")

        return result.get("result")

    async def apply_code(self, key: str, css: Optional[str], js: Optional[str]) -> Dict:
        try:
            raw = await self._evaluate(build_apply_script(key, css, js))
        except HarnessError as e:
            return {"success": False, "logs": [], "error": str(e)}

        try:
            reply = json.loads(raw) if isinstance(raw, str) else (raw or {})
        except ValueError:
            return {"success": False, "logs": [], "error": f"Unexpected apply reply: {raw!r}"}

        return {
            "success": bool(reply.get("success")),
            "logs": list(reply.get("logs") or []),
            "error": reply.get("error")
        }

    async def reset_by_key_prefix(self, prefix: str) -> bool:
        try:
            removed = await self._evaluate(build_reset_script(prefix))
        except HarnessError as e:
            logger.warning("Reset of %s failed: %s", prefix, e)
            return False

        logger.debug("Reset %s removed %s node(s)", prefix, removed)
        return True

    async def capture_screenshot(self) -> Optional[bytes]:
        result = await asyncio.to_thread(
            self.api_client.capture_screenshot,
            self.client_id,
            self.tab_id,
            self.full_page
        )

        if not result["success"]:
            logger.warning("Screenshot failed: %s", result.get("error"))
            return None

        return decode_data_url(result.get("image_data"))

    async def install_console_shim(self):
        await self._evaluate(build_shim_script())

    async def collect_console_errors(self) -> List[str]:
        raw = await self._evaluate(build_collect_script())
        try:
            errors = json.loads(raw) if isinstance(raw, str) else (raw or [])
        except ValueError:
            raise HarnessError(f"Unexpected console reply: {raw!r}")
        return [str(e) for e in errors]

    async def query_selectors(self, selectors: List[str]) -> Dict[str, Optional[bool]]:
        if not selectors:
            return {}

        raw = await self._evaluate(build_query_script(selectors))
        try:
            found = json.loads(raw) if isinstance(raw, str) else (raw or {})
        except ValueError:
            raise HarnessError(f"Unexpected selector reply: {raw!r}")
        return found

    async def reload_page(self) -> bool:
        result = await asyncio.to_thread(self.api_client.reload_tab, self.client_id, self.tab_id)
        if not result["success"]:
            logger.warning("Reload failed: %s", result.get("error"))
        return result["success"]
