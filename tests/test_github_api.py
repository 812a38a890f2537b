from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from runwatch.github_api import GitHubApiError, GitHubRunClient
from runwatch.models import RunStatus


def _client(handler, token="ghp_test") -> GitHubRunClient:
    return GitHubRunClient(token=token, base_url="https://api.example", transport=httpx.MockTransport(handler))


def _run_json(run_id=1):
    return {
        "id": run_id,
        "name": "CI",
        "head_branch": "main",
        "head_sha": "abc",
        "status": "in_progress",
        "conclusion": None,
        "workflow_id": 42,
        "html_url": "https://github.com/octocat/repo/actions/runs/1",
        "created_at": "2024-05-01T10:00:00Z",
        "updated_at": "2024-05-01T10:01:00Z",
        "run_number": 1,
        "event": "push",
    }


def test_list_runs_sends_auth_headers_and_decodes():
    async def scenario():
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            seen["auth"] = request.headers.get("Authorization")
            seen["accept"] = request.headers.get("Accept")
            seen["version"] = request.headers.get("X-GitHub-Api-Version")
            return httpx.Response(200, json={"total_count": 1, "workflow_runs": [_run_json()]})

        client = _client(handler)
        try:
            runs = await client.list_runs("octocat/repo", 42, 5)
        finally:
            await client.close()

        assert seen["path"] == "/repos/octocat/repo/actions/workflows/42/runs"
        assert seen["params"] == {"per_page": "5"}
        assert seen["auth"] == "Bearer ghp_test"
        assert seen["accept"] == "application/vnd.github+json"
        assert seen["version"] == "2022-11-28"
        assert [r.status for r in runs] == [RunStatus.IN_PROGRESS]

    asyncio.run(scenario())


@pytest.mark.parametrize(
    "response,code",
    [
        (httpx.Response(401), "unauthorized"),
        (httpx.Response(403), "forbidden"),
        (httpx.Response(403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1700000000"}), "rate_limited"),
        (httpx.Response(404), "not_found"),
        (httpx.Response(422, json={"message": "Hook already exists"}), "validation_failed"),
        (httpx.Response(502, text="bad gateway"), "server_error"),
        (httpx.Response(200, text="not json"), "decoding_error"),
        (httpx.Response(200, json={"workflow_runs": [{"id": 1}]}), "decoding_error"),
        (httpx.Response(200, json={"total_count": 0}), "decoding_error"),
    ],
)
def test_errors_are_mapped_to_codes(response, code):
    async def scenario():
        client = _client(lambda request: response)
        try:
            with pytest.raises(GitHubApiError) as exc:
                await client.list_runs("octocat/repo", 42, 5)
        finally:
            await client.close()
        assert exc.value.code == code
        if code == "rate_limited":
            assert exc.value.reset_at is not None
            assert int(exc.value.reset_at.timestamp()) == 1700000000
        if code == "validation_failed":
            assert str(exc.value) == "Hook already exists"

    asyncio.run(scenario())


def test_missing_token_fails_without_a_request():
    async def scenario():
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"workflow_runs": []})

        client = _client(handler, token=None)
        try:
            with pytest.raises(GitHubApiError) as exc:
                await client.list_runs("octocat/repo", 42, 5)
        finally:
            await client.close()
        assert exc.value.code == "no_token"
        assert calls == []

    asyncio.run(scenario())


def test_network_errors_are_wrapped():
    async def scenario():
        def handler(request):
            raise httpx.ConnectError("offline", request=request)

        client = _client(handler)
        try:
            with pytest.raises(GitHubApiError) as exc:
                await client.list_runs("octocat/repo", 42, 5)
        finally:
            await client.close()
        assert exc.value.code == "network_error"

    asyncio.run(scenario())


def test_create_subscription_posts_hook_body():
    async def scenario():
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": 987, "active": True})

        client = _client(handler)
        try:
            hook_id = await client.create_subscription("octocat/repo", "https://smee.io/abc")
        finally:
            await client.close()

        assert hook_id == 987
        assert seen["method"] == "POST"
        assert seen["path"] == "/repos/octocat/repo/hooks"
        assert seen["body"] == {
            "name": "web",
            "active": True,
            "events": ["workflow_run"],
            "config": {"url": "https://smee.io/abc", "content_type": "json", "insecure_ssl": "0"},
        }

    asyncio.run(scenario())


def test_create_subscription_requires_hook_id():
    async def scenario():
        client = _client(lambda request: httpx.Response(201, json={"active": True}))
        try:
            with pytest.raises(GitHubApiError) as exc:
                await client.create_subscription("octocat/repo", "https://smee.io/abc")
        finally:
            await client.close()
        assert exc.value.code == "invalid_response"

    asyncio.run(scenario())


def test_delete_subscription_sends_delete():
    async def scenario():
        seen: list[tuple[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path))
            return httpx.Response(204)

        client = _client(handler)
        try:
            await client.delete_subscription("octocat/repo", 55)
        finally:
            await client.close()
        assert seen == [("DELETE", "/repos/octocat/repo/hooks/55")]

    asyncio.run(scenario())


def test_list_workflows_decodes_and_tolerates_unknown_state():
    async def scenario():
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            return httpx.Response(
                200,
                json={
                    "total_count": 2,
                    "workflows": [
                        {
                            "id": 161335,
                            "name": "CI",
                            "path": ".github/workflows/ci.yml",
                            "state": "active",
                            "html_url": "https://github.com/octocat/repo/blob/main/.github/workflows/ci.yml",
                        },
                        {"id": 161336, "name": "Old", "path": ".github/workflows/old.yml", "state": "archived"},
                    ],
                },
            )

        client = _client(handler)
        try:
            workflows = await client.list_workflows("octocat/repo")
        finally:
            await client.close()

        assert seen["path"] == "/repos/octocat/repo/actions/workflows"
        assert [(wf.id, wf.name, wf.state.value) for wf in workflows] == [
            (161335, "CI", "active"),
            (161336, "Old", "unknown"),
        ]

    asyncio.run(scenario())


def test_list_workflows_rejects_bad_shape():
    async def scenario():
        client = _client(lambda request: httpx.Response(200, json={"workflows": [{"id": 1}]}))
        try:
            with pytest.raises(GitHubApiError) as exc:
                await client.list_workflows("octocat/repo")
        finally:
            await client.close()
        assert exc.value.code == "decoding_error"

    asyncio.run(scenario())


def test_dispatch_workflow_posts_ref_and_inputs():
    async def scenario():
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(204)

        client = _client(handler)
        try:
            await client.dispatch_workflow("octocat/repo", 42, "main", {"env": "staging"})
        finally:
            await client.close()

        assert seen["method"] == "POST"
        assert seen["path"] == "/repos/octocat/repo/actions/workflows/42/dispatches"
        assert seen["body"] == {"ref": "main", "inputs": {"env": "staging"}}

    asyncio.run(scenario())


def test_dispatch_workflow_reports_validation_errors():
    async def scenario():
        client = _client(
            lambda request: httpx.Response(422, json={"message": "Workflow does not have 'workflow_dispatch' trigger"})
        )
        try:
            with pytest.raises(GitHubApiError) as exc:
                await client.dispatch_workflow("octocat/repo", 42, "main")
        finally:
            await client.close()
        assert exc.value.code == "validation_failed"
        assert "workflow_dispatch" in str(exc.value)

    asyncio.run(scenario())
