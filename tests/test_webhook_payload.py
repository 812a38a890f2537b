import json

import pytest

from runwatch.models import RunStatus
from runwatch.relay import parse_webhook_event


def _workflow_run(run_id=100, status="completed", conclusion="success"):
    return {
        "id": run_id,
        "name": "CI",
        "head_branch": "main",
        "head_sha": "abc",
        "status": status,
        "conclusion": conclusion,
        "workflow_id": 42,
        "html_url": f"https://github.com/octocat/repo/actions/runs/{run_id}",
        "created_at": "2024-05-01T10:00:00Z",
        "updated_at": "2024-05-01T10:05:00Z",
        "run_number": 3,
        "event": "push",
    }


def test_object_body_is_decoded():
    frame = json.dumps(
        {
            "x-github-event": "workflow_run",
            "body": {
                "action": "completed",
                "workflow_run": _workflow_run(),
                "repository": {"full_name": "octocat/repo"},
            },
        }
    )

    event = parse_webhook_event(frame)
    assert event is not None
    assert event.action == "completed"
    assert event.run.id == 100
    assert event.run.workflow_id == 42
    assert event.repository_full_name == "octocat/repo"


def test_double_encoded_body_is_decoded():
    inner = {
        "action": "in_progress",
        "workflow_run": _workflow_run(run_id=200, status="in_progress", conclusion=None),
        "repository": {"full_name": "octocat/repo"},
    }
    frame = json.dumps({"body": json.dumps(inner)})

    event = parse_webhook_event(frame)
    assert event is not None
    assert event.run.id == 200
    assert event.run.status is RunStatus.IN_PROGRESS


def test_frame_without_envelope_is_the_payload():
    frame = json.dumps({"workflow_run": _workflow_run(), "repository": {"full_name": "octocat/repo"}})

    event = parse_webhook_event(frame)
    assert event is not None
    # No action given.
    assert event.action == "unknown"


@pytest.mark.parametrize(
    "frame",
    [
        "not json",
        "",
        "[]",
        json.dumps({"body": None}),
        json.dumps({"body": {"zen": "Keep it simple.", "hook_id": 123}}),
        json.dumps({"body": {"action": "opened", "pull_request": {"id": 1}}}),
        json.dumps({"body": {"action": "completed", "workflow_run": _workflow_run()}}),
        json.dumps({"body": "{not json"}),
        json.dumps({"body": 12}),
        json.dumps(
            {
                "body": {
                    "workflow_run": {"id": 1, "status": "completed"},
                    "repository": {"full_name": "octocat/repo"},
                }
            }
        ),
    ],
    ids=[
        "malformed",
        "empty",
        "non-object",
        "null-body",
        "ping",
        "pull-request",
        "missing-repository",
        "bad-inner-json",
        "numeric-body",
        "incomplete-run",
    ],
)
def test_non_run_frames_are_ignored(frame):
    assert parse_webhook_event(frame) is None
