"""
Webhook API tests
"""
import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from api.webhook import get_validation_error, verify_webhook_secret
from core.reviewer import OUTCOME_REVIEWED, ReviewOutcome

PROJECT_ID = "42"
SECRET = "s3cret"


class RecordingReviewer:
    """Counts dispatched reviews"""

    def __init__(self):
        self.calls = []

    async def process_by_iid(self, mr_iid):
        self.calls.append(mr_iid)
        return ReviewOutcome(mr_iid, OUTCOME_REVIEWED)


def mr_event(action="open", state="opened", iid=7, project_id=42, **attrs):
    object_attributes = {
        "iid": iid,
        "action": action,
        "state": state,
        "title": "feat: add login",
        "source_branch": "feature/login",
        "target_branch": "main",
    }
    object_attributes.update(attrs)
    return {
        "object_kind": "merge_request",
        "project": {"id": project_id, "path_with_namespace": "group/project"},
        "object_attributes": object_attributes,
    }


@pytest.fixture
def recording_reviewer():
    return RecordingReviewer()


@pytest.fixture
def client(recording_reviewer):
    return TestClient(create_app(recording_reviewer, PROJECT_ID, SECRET))


def post(client, payload, token=SECRET):
    headers = {"X-Gitlab-Token": token} if token is not None else {}
    return client.post("/webhook/gitlab", json=payload, headers=headers)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert "timestamp" in data


def test_valid_open_event_is_accepted(client, recording_reviewer):
    response = post(client, mr_event())

    assert response.status_code == 202
    assert response.json() == {
        "status": "accepted",
        "message": "MR !7 processing started",
        "mr_iid": 7,
        "action": "open",
    }
    assert recording_reviewer.calls == [7]


@pytest.mark.parametrize("action", ["open", "update", "reopen"])
def test_processable_actions(client, recording_reviewer, action):
    assert post(client, mr_event(action=action)).status_code == 202
    assert recording_reviewer.calls == [7]


def test_close_event_is_skipped(client, recording_reviewer):
    response = post(client, mr_event(action="close", state="closed"))

    assert response.status_code == 200
    assert response.json()["status"] == "skipped"
    assert recording_reviewer.calls == []


def test_non_opened_state_is_skipped(client, recording_reviewer):
    response = post(client, mr_event(action="update", state="merged"))
    assert response.status_code == 200
    assert "merged" in response.json()["message"]
    assert recording_reviewer.calls == []


@pytest.mark.parametrize("flag", ["draft", "work_in_progress"])
def test_draft_is_skipped(client, recording_reviewer, flag):
    response = post(client, mr_event(**{flag: True}))
    assert response.status_code == 200
    assert response.json()["status"] == "skipped"
    assert recording_reviewer.calls == []


def test_project_mismatch_is_skipped(client, recording_reviewer):
    response = post(client, mr_event(project_id=99))
    assert response.status_code == 200
    assert "mismatch" in response.json()["message"]
    assert recording_reviewer.calls == []


def test_project_matched_by_path(recording_reviewer):
    client = TestClient(create_app(recording_reviewer, "group/project", SECRET))
    assert post(client, mr_event(project_id=99)).status_code == 202
    assert recording_reviewer.calls == [7]


def test_wrong_secret_is_unauthorized(client, recording_reviewer):
    response = post(client, mr_event(), token="wrong")
    assert response.status_code == 401
    assert response.json()["error"] is True
    assert recording_reviewer.calls == []


def test_missing_secret_is_unauthorized(client):
    assert post(client, mr_event(), token=None).status_code == 401


def test_no_configured_secret_accepts(recording_reviewer):
    client = TestClient(create_app(recording_reviewer, PROJECT_ID, ""))
    assert post(client, mr_event(), token=None).status_code == 202


def test_invalid_payload_is_rejected(client, recording_reviewer):
    payload = mr_event()
    payload["object_attributes"]["iid"] = "7"

    response = post(client, payload)

    assert response.status_code == 400
    assert "object_attributes.iid" in response.json()["message"]
    assert recording_reviewer.calls == []


def test_non_json_body_is_rejected(client):
    response = client.post("/webhook/gitlab", content=b"not json",
                           headers={"X-Gitlab-Token": SECRET, "Content-Type": "application/json"})
    assert response.status_code == 400


def test_non_object_body_message(client):
    response = post(client, [1, 2])

    assert response.status_code == 400
    assert response.json()["message"] == "Invalid payload: expected a JSON object"


def test_unsupported_kind_is_skipped(client, recording_reviewer):
    response = post(client, {"object_kind": "push", "project": {"id": 42}})
    assert response.status_code == 200
    assert response.json() == {"status": "skipped", "message": "Unsupported webhook type: push"}
    assert recording_reviewer.calls == []


def test_webhook_runs_real_pipeline(reviewer, mock_gitlab):
    mock_gitlab.add_merge_request(7)
    client = TestClient(create_app(reviewer, "42", SECRET))

    assert post(client, mr_event()).status_code == 202

    assert mock_gitlab.comments[7] == ["Looks good to me."]
    assert mock_gitlab.labels_of(7) == ["ai-review"]


class TestValidation:
    def test_not_an_object(self):
        assert get_validation_error([1, 2]) == "expected a JSON object"

    def test_missing_object_kind(self):
        assert get_validation_error({"project": {}}) == "Missing or invalid field: object_kind"

    def test_missing_project(self):
        assert get_validation_error({"object_kind": "push"}) == "Missing field: project"

    def test_missing_object_attributes(self):
        error = get_validation_error({"object_kind": "merge_request", "project": {"id": 1}})
        assert error == "Missing field: object_attributes"

    def test_boolean_iid_rejected(self):
        payload = mr_event(iid=True)
        assert get_validation_error(payload) == "Missing or invalid field: object_attributes.iid"

    def test_missing_action(self):
        payload = mr_event()
        del payload["object_attributes"]["action"]
        assert get_validation_error(payload) == "Missing or invalid field: object_attributes.action"

    def test_missing_state(self):
        payload = mr_event()
        del payload["object_attributes"]["state"]
        assert get_validation_error(payload) == "Missing or invalid field: object_attributes.state"

    def test_valid(self):
        assert get_validation_error(mr_event()) is None


def test_verify_webhook_secret():
    assert verify_webhook_secret("abc", "abc")
    assert not verify_webhook_secret("abd", "abc")
    assert not verify_webhook_secret(None, "abc")
    assert not verify_webhook_secret("", "abc")
