"""
API client for the browser-control server.

Every method returns a result dict ({"success": bool, ..., "error": str | None})
and never raises for transport failures.
"""

import requests
from typing import Any, Dict, List, Optional


class APIClient:
    """Client for the browser-control HTTP API."""

    def __init__(self, base_url: str, timeout: int = 300):
        """
        Initialize API client.

        Args:
            base_url: Base URL of the browser-control server (e.g., http://localhost:8080)
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    def _post(self, path: str, payload: Dict[str, Any], action: str) -> Dict[str, Any]:
        """
        POST a JSON payload and decode the JSON reply.

        Args:
            path: Endpoint path (e.g., "/page/execute")
            payload: JSON body
            action: Human-readable action name used in error messages

        Returns:
            Dict with success, data (decoded body) and error
        """
        api_url = f"{self.base_url}{path}"

        try:
            response = requests.post(
                api_url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )

            response.raise_for_status()

            return {
                "success": True,
                "data": response.json(),
                "error": None
            }

        except requests.exceptions.Timeout:
            return {
                "success": False,
                "data": None,
                "error": f"{action} request timed out after {self.timeout} seconds"
            }

        except requests.exceptions.HTTPError as e:
            error_msg = f"HTTP error: {e.response.status_code}"
            try:
                error_details = e.response.json()
                error_msg += f" - {error_details.get('error', str(error_details))}"
            except ValueError:
                error_msg += f" - {e.response.text[:200]}"

            return {
                "success": False,
                "data": None,
                "error": error_msg
            }

        except requests.exceptions.RequestException as e:
            return {
                "success": False,
                "data": None,
                "error": f"{action} failed: {str(e)}"
            }

        except ValueError as e:
            return {
                "success": False,
                "data": None,
                "error": f"{action} returned invalid JSON: {str(e)}"
            }

    def execute_javascript(
        self,
        client_id: str,
        tab_id: str,
        expression: str,
        return_by_value: bool = True,
        await_promise: bool = False
    ) -> Dict[str, Any]:
        """
        Evaluate a JavaScript expression in a tab.

        Args:
            client_id: Base client ID
            tab_id: Tab ID to run the expression in
            expression: JavaScript expression
            return_by_value: Serialize the result by value
            await_promise: Await the result if it is a promise

        Returns:
            Dict with:
            - success: bool (transport succeeded)
            - result: evaluated value (if any)
            - exceptionDetails: page-side exception (if any)
            - error: str (if any)
        """
        payload = {
            "clientId": client_id,
            "tabId": tab_id,
            "expression": expression,
            "returnByValue": return_by_value,
            "awaitPromise": await_promise
        }

        reply = self._post("/page/execute", payload, "Execute")
        if not reply["success"]:
            return {
                "success": False,
                "result": None,
                "exceptionDetails": None,
                "error": reply["error"]
            }

        data = reply["data"] or {}
        result = data.get("result") or {}
        exception = data.get("exceptionDetails")

        return {
            "success": True,
            "result": result.get("value") if isinstance(result, dict) else result,
            "exceptionDetails": exception,
            "error": None
        }

    def capture_screenshot(
        self,
        client_id: str,
        tab_id: str,
        full_page: bool = False
    ) -> Dict[str, Any]:
        """
        Capture a screenshot of a specific tab.

        Args:
            client_id: Base client ID
            tab_id: Tab ID to capture
            full_page: Whether to capture the full page (default: False)

        Returns:
            Dict with:
            - success: bool
            - image_data: str (base64 data URL) if successful
            - error: str (if any)
        """
        payload = {
            "clientId": client_id,
            "tabId": tab_id,
            "fullPage": full_page
        }

        reply = self._post("/page/screenshot", payload, "Screenshot")
        if not reply["success"]:
            return {
                "success": False,
                "image_data": None,
                "error": reply["error"]
            }

        data = reply["data"] or {}
        return {
            "success": bool(data.get("imageData")),
            "image_data": data.get("imageData"),
            "format": data.get("format", "png"),
            "error": None if data.get("imageData") else "Screenshot response had no image data"
        }

    def reload_tab(self, client_id: str, tab_id: str) -> Dict[str, Any]:
        """
        Reload a tab and wait for it to finish loading.

        Returns:
            Dict with success and error
        """
        payload = {
            "clientId": client_id,
            "tabId": tab_id
        }

        reply = self._post("/page/reload", payload, "Reload")
        return {
            "success": reply["success"],
            "error": reply["error"]
        }

    def open_tab(self, client_id: str, url: str, wait_timeout: Optional[int] = None) -> Dict[str, Any]:
        """
        Open a new tab for a client.

        Args:
            client_id: Base client ID
            url: URL to open
            wait_timeout: Optional timeout in milliseconds to wait for page load

        Returns:
            Dict with success, tab_id and error
        """
        payload = {
            "clientId": client_id,
            "url": url,
            "background": False
        }
        if wait_timeout is not None:
            payload["waitTimeout"] = wait_timeout

        reply = self._post("/tabs/open", payload, "Open tab")
        if not reply["success"]:
            return {
                "success": False,
                "tab_id": None,
                "error": reply["error"]
            }

        data = reply["data"] or {}
        tab_id = data.get("tabId")
        return {
            "success": tab_id is not None,
            "tab_id": tab_id,
            "error": None if tab_id is not None else "Open tab response had no tabId"
        }

    def list_clients(self) -> List[Dict[str, Any]]:
        """
        List browser clients connected to the server.

        Returns:
            List of client dicts (empty if the server is unreachable)
        """
        try:
            response = requests.get(f"{self.base_url}/clients", timeout=10)
            response.raise_for_status()
            clients = response.json()
        except (requests.exceptions.RequestException, ValueError):
            return []

        if isinstance(clients, dict):
            clients = clients.get("clients", [])
        return clients if isinstance(clients, list) else []

    def check_health(self) -> bool:
        """
        Check if the API server is healthy.

        Returns:
            True if server is reachable, False otherwise
        """
        try:
            url = f"{self.base_url}/status"
            response = requests.get(url, timeout=5)
            return response.status_code == 200
        except requests.exceptions.RequestException:
            return False
