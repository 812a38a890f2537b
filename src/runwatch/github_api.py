from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Any, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from .config import RunWatchConfig
from .models import RunDecodeError, RunSnapshot, WorkflowInfo

GITHUB_API_VERSION = "2022-11-28"
GITHUB_ACCEPT = "application/vnd.github+json"


class GitHubApiError(Exception):
    """
    Error raised by `GitHubRunClient`.

    `code` is one of: no_token, unauthorized, forbidden, not_found,
    rate_limited, validation_failed, server_error, network_error,
    decoding_error, invalid_response.
    """

    def __init__(
        self,
        code: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        reset_at: Optional[datetime] = None,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.reset_at = reset_at


class RunApi(Protocol):
    """The three remote operations the sync engine consumes."""

    async def list_runs(self, repo: str, workflow_id: int, limit: int) -> list[RunSnapshot]: ...

    async def create_subscription(self, repo: str, relay_url: str) -> int: ...

    async def delete_subscription(self, repo: str, subscription_id: int) -> None: ...


class HookConfig(BaseModel):
    url: str
    content_type: str = "json"
    insecure_ssl: str = "0"


class CreateHookRequest(BaseModel):
    name: str = "web"
    active: bool = True
    events: list[str] = Field(default_factory=lambda: ["workflow_run"])
    config: HookConfig


class DispatchRequest(BaseModel):
    ref: str
    inputs: dict[str, str] = Field(default_factory=dict)


def _error_message(body: str) -> Optional[str]:
    try:
        data = json.loads(body)
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        return data["message"]
    return None


def _raise_for_status(resp: httpx.Response) -> None:
    code = resp.status_code
    if 200 <= code < 300:
        return
    if code == 401:
        raise GitHubApiError("unauthorized", "Authentication required. Please sign in.", status_code=code)
    if code == 403:
        if resp.headers.get("X-RateLimit-Remaining") == "0":
            reset_at = None
            raw_reset = resp.headers.get("X-RateLimit-Reset")
            if raw_reset:
                try:
                    reset_at = datetime.fromtimestamp(float(raw_reset), tz=timezone.utc)
                except ValueError:
                    reset_at = None
            raise GitHubApiError("rate_limited", "Rate limited. Please wait.", status_code=code, reset_at=reset_at)
        raise GitHubApiError("forbidden", "Access denied. Check your token permissions.", status_code=code)
    if code == 404:
        raise GitHubApiError("not_found", "Resource not found.", status_code=code)
    body = resp.text
    if code == 422:
        message = _error_message(body) or f"Validation failed: {body}"
        raise GitHubApiError("validation_failed", message, status_code=code)
    message = _error_message(body)
    if message:
        raise GitHubApiError("server_error", f"GitHub error ({code}): {message}", status_code=code)
    if body:
        raise GitHubApiError("server_error", f"GitHub error ({code}): {body}", status_code=code)
    raise GitHubApiError("server_error", f"GitHub server error ({code}).", status_code=code)


class GitHubRunClient:
    """Async GitHub REST client covering workflow runs and repository hooks."""

    def __init__(
        self,
        *,
        token: Optional[str],
        base_url: str = "https://api.github.com",
        timeout_sec: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._token = token
        headers = {"Accept": GITHUB_ACCEPT, "X-GitHub-Api-Version": GITHUB_API_VERSION}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_sec,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        config: RunWatchConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "GitHubRunClient":
        return cls(
            token=config.github_token,
            base_url=config.api_base_url,
            timeout_sec=config.http_timeout_sec,
            transport=transport,
        )

    def set_token(self, token: Optional[str]) -> None:
        self._token = token

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if not self._token:
            raise GitHubApiError("no_token", "No authentication token. Please sign in.")
        headers = {"Authorization": f"Bearer {self._token}"}
        try:
            resp = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise GitHubApiError("network_error", f"Network error: {exc}") from exc
        _raise_for_status(resp)
        return resp

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise GitHubApiError("decoding_error", f"Failed to parse response: {exc}") from exc

    async def list_runs(self, repo: str, workflow_id: int, limit: int = 10) -> list[RunSnapshot]:
        resp = await self._request(
            "GET",
            f"/repos/{repo}/actions/workflows/{int(workflow_id)}/runs",
            params={"per_page": int(limit)},
        )
        body = self._json(resp)
        if not isinstance(body, dict) or not isinstance(body.get("workflow_runs"), list):
            raise GitHubApiError("decoding_error", "Failed to parse response: missing workflow_runs")
        try:
            return [RunSnapshot.from_api(item) for item in body["workflow_runs"]]
        except RunDecodeError as exc:
            raise GitHubApiError("decoding_error", f"Failed to parse response: {exc}") from exc

    async def create_subscription(self, repo: str, relay_url: str) -> int:
        payload = CreateHookRequest(config=HookConfig(url=relay_url))
        resp = await self._request("POST", f"/repos/{repo}/hooks", json=payload.model_dump())
        body = self._json(resp)
        hook_id = body.get("id") if isinstance(body, dict) else None
        if not isinstance(hook_id, int) or isinstance(hook_id, bool):
            raise GitHubApiError("invalid_response", "Invalid response from GitHub.")
        return hook_id

    async def delete_subscription(self, repo: str, subscription_id: int) -> None:
        await self._request("DELETE", f"/repos/{repo}/hooks/{int(subscription_id)}")

    async def list_workflows(self, repo: str) -> list[WorkflowInfo]:
        resp = await self._request("GET", f"/repos/{repo}/actions/workflows", params={"per_page": 100})
        body = self._json(resp)
        if not isinstance(body, dict) or not isinstance(body.get("workflows"), list):
            raise GitHubApiError("decoding_error", "Failed to parse response: missing workflows")
        try:
            return [WorkflowInfo.from_api(item) for item in body["workflows"]]
        except RunDecodeError as exc:
            raise GitHubApiError("decoding_error", f"Failed to parse response: {exc}") from exc

    async def dispatch_workflow(
        self,
        repo: str,
        workflow_id: int,
        ref: str,
        inputs: Optional[dict[str, str]] = None,
    ) -> None:
        """Trigger a `workflow_dispatch` run; GitHub answers 204 without a run id."""

        payload = DispatchRequest(ref=ref, inputs=dict(inputs or {}))
        await self._request(
            "POST",
            f"/repos/{repo}/actions/workflows/{int(workflow_id)}/dispatches",
            json=payload.model_dump(),
        )
