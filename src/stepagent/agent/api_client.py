# agent/api_client.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from datetime import datetime, timezone
from typing import List, Optional, Protocol
from urllib.parse import quote, urljoin

from pydantic import BaseModel, ValidationError

from stepagent.model import Build, BuildStatus, Job, Pipeline, Secret

from .schemas import (
    BuildRecord,
    BuildStatusUpdate,
    JobRecord,
    PipelineRecord,
    SecretRecord,
    StepStartUpdate,
    StepStopUpdate,
)


class APIError(Exception):
    """Raised when API requests fail."""
    pass


class ControlPlane(Protocol):
    """What the launcher needs from the build-management API."""

    def build_from_id(self, build_id: int | str) -> Build: ...

    def job_from_id(self, job_id: int | str) -> Job: ...

    def pipeline_from_id(self, pipeline_id: int | str) -> Pipeline: ...

    def secrets_for_build(self, build: Build) -> List[Secret]: ...

    def update_step_start(self, build_id: int | str, step_name: str) -> None: ...

    def update_step_stop(self, build_id: int | str, step_name: str, code: int) -> None: ...

    def update_build_status(self, status: BuildStatus, build_id: int | str) -> None: ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class APIClient:
    """HTTP client for communicating with the control-plane API."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0):
        """
        Initialize API client.

        Args:
            base_url: Base URL of the API (e.g., "https://api.example.com")
            token: Bearer token for the API
            timeout: Per-request socket timeout in seconds
        """
        # Ensure base_url doesn't end with /
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"APIClient(base_url={self.base_url!r})"

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
    ) -> object:
        """
        Make an HTTP request to the API.

        Args:
            method: HTTP method (GET, PUT, ...)
            path: API path (e.g., "/v4/builds/1")
            data: Optional JSON data to send in request body

        Returns:
            Parsed JSON response (empty dict for empty bodies)

        Raises:
            APIError: If the request fails
        """
        url = urljoin(self.base_url + "/", path.lstrip("/"))

        req_headers = {
            "Content-Type": "application/json",
        }
        if self.token:
            req_headers["Authorization"] = f"Bearer {self.token}"

        req_data = None
        if data is not None:
            req_data = json.dumps(data).encode("utf-8")

        req = urllib.request.Request(url, data=req_data, headers=req_headers, method=method)

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response_data = response.read().decode("utf-8")
                if response_data:
                    return json.loads(response_data)
                return {}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise APIError(f"{method} {path} failed: {e.code} {e.reason}. {error_body}".rstrip()) from e
        except urllib.error.URLError as e:
            raise APIError(f"Network error: {e.reason}") from e
        except json.JSONDecodeError as e:
            raise APIError(f"Invalid JSON response: {e}") from e

    def _get(self, path: str, schema: type[BaseModel]) -> BaseModel:
        payload = self._request("GET", path)
        try:
            return schema.model_validate(payload)
        except ValidationError as e:
            raise APIError(f"Unexpected response from GET {path}: {e.error_count()} validation error(s)") from e

    def build_from_id(self, build_id: int | str) -> Build:
        return self._get(f"/v4/builds/{build_id}", BuildRecord).to_build()

    def job_from_id(self, job_id: int | str) -> Job:
        return self._get(f"/v4/jobs/{job_id}", JobRecord).to_job()

    def pipeline_from_id(self, pipeline_id: int | str) -> Pipeline:
        return self._get(f"/v4/pipelines/{pipeline_id}", PipelineRecord).to_pipeline()

    def secrets_for_build(self, build: Build) -> List[Secret]:
        path = f"/v4/builds/{build.id}/secrets"
        payload = self._request("GET", path)
        if not isinstance(payload, list):
            raise APIError(f"Unexpected response from GET {path}: expected a list")
        try:
            return [SecretRecord.model_validate(item).to_secret() for item in payload]
        except ValidationError as e:
            # Never echo the payload: it holds secret values
            raise APIError(f"Unexpected response from GET {path}: {e.error_count()} validation error(s)") from e

    def update_step_start(self, build_id: int | str, step_name: str) -> None:
        body = StepStartUpdate(start_time=_now()).model_dump(by_alias=True)
        self._request("PUT", f"/v4/builds/{build_id}/steps/{quote(step_name, safe='')}", data=body)

    def update_step_stop(self, build_id: int | str, step_name: str, code: int) -> None:
        body = StepStopUpdate(end_time=_now(), code=code).model_dump(by_alias=True)
        self._request("PUT", f"/v4/builds/{build_id}/steps/{quote(step_name, safe='')}", data=body)

    def update_build_status(self, status: BuildStatus, build_id: int | str) -> None:
        body = BuildStatusUpdate(status=BuildStatus(status).value).model_dump()
        self._request("PUT", f"/v4/builds/{build_id}", data=body)
