# reporter.py
from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import urljoin

from .configs import BuildConfigStore
from .log import get_logger
from .model import BuildStatus

logger = get_logger(__name__)


class APIError(Exception):
    """Raised when build API requests fail."""
    pass


class BuildApiClient:
    """HTTP client for the build API a build was queued from."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10.0):
        """
        Initialize API client.

        Args:
            base_url: Base URL of the build API (the record's `apiUri`)
            token: Bearer token scoped to the build
            timeout: Socket timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _request(self, method: str, path: str, data: Optional[dict] = None) -> Any:
        """
        Make an HTTP request to the API.

        Args:
            method: HTTP method (GET, PUT, ...)
            path: API path (e.g., "/v4/builds/1")
            data: Optional JSON data to send in request body

        Returns:
            Parsed JSON response (or an empty dict for an empty body)

        Raises:
            APIError: If the request fails
        """
        url = urljoin(self.base_url + "/", path.lstrip("/"))

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        body = json.dumps(data).encode("utf-8") if data is not None else None
        req = urllib.request.Request(url, data=body, headers=headers, method=method)

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                payload = response.read().decode("utf-8")
                return json.loads(payload) if payload else {}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise APIError(f"API request failed: {e.code} {e.reason}. {error_body}")
        except urllib.error.URLError as e:
            raise APIError(f"Network error: {e.reason}")
        except json.JSONDecodeError as e:
            raise APIError(f"Invalid JSON response: {e}")

    def update_build_status(self, build_id: int | str, status: str, message: str) -> Any:
        return self._request(
            "PUT",
            f"/v4/builds/{build_id}",
            data={"status": status, "statusMessage": message},
        )

    def update_step_stop(self, build_id: int | str, step_name: str, code: int) -> Any:
        """Close a step with an exit code and the current time as its end time."""
        return self._request(
            "PUT",
            f"/v4/builds/{build_id}/steps/{step_name}",
            data={"endTime": datetime.now(timezone.utc).isoformat(), "code": code},
        )

    def get_current_step(self, build_id: int | str) -> Optional[dict]:
        """Return the active step of a build, if any."""
        steps = self._request("GET", f"/v4/builds/{build_id}/steps?status=active")
        if isinstance(steps, list):
            return steps[0] if steps else None
        return steps or None


class BuildStatusReporter:
    """
    Reports build status to the build API, best-effort.

    Credentials come from the build's config record; once the record is
    gone the build is considered resolved and nothing is sent. Failures
    are logged and surface only as a False return.
    """

    def __init__(
        self,
        configs: BuildConfigStore,
        client_factory: Callable[[str, Optional[str]], BuildApiClient] = BuildApiClient,
    ):
        self.configs = configs
        self.client_factory = client_factory

    async def _client(self, build_id: int | str) -> Optional[BuildApiClient]:
        config = await self.configs.get(build_id)
        if config is None or not config.api_uri:
            logger.debug("no build config for build %s, skipping API update", build_id)
            return None
        return self.client_factory(config.api_uri, config.token)

    async def report(self, build_id: int | str, status: BuildStatus, message: str) -> bool:
        status = BuildStatus(status)
        try:
            client = await self._client(build_id)
            if client is None:
                return False
            await asyncio.to_thread(client.update_build_status, build_id, status.value, message)
        except Exception as e:
            logger.error("failed to update build %s to %s: %s", build_id, status.value, e)
            return False
        logger.info("build %s -> %s (%s)", build_id, status.value, message)
        return True

    async def stop_active_step(self, build_id: int | str, code: int) -> bool:
        """Close the build's active step, if it has one, with `code`."""
        try:
            client = await self._client(build_id)
            if client is None:
                return False
            step = await asyncio.to_thread(client.get_current_step, build_id)
            if not step or not step.get("name"):
                return False
            await asyncio.to_thread(client.update_step_stop, build_id, step["name"], code)
        except Exception as e:
            logger.error("failed to stop active step of build %s: %s", build_id, e)
            return False
        return True
