"""
GitLab webhook validation and event evaluation
"""
import hmac
import logging
from typing import Any, Dict, Optional

from config.settings import PROCESSABLE_ACTIONS, PROCESSABLE_STATES

logger = logging.getLogger(__name__)

MERGE_REQUEST_KIND = "merge_request"


def verify_webhook_secret(token: Optional[str], expected_secret: str) -> bool:
    """Constant-time comparison of the X-Gitlab-Token header with the configured secret"""
    if not token:
        return False
    return hmac.compare_digest(token.encode("utf-8"), expected_secret.encode("utf-8"))


def _is_number(value: Any) -> bool:
    # bool is an int subclass but never a valid iid
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def get_validation_error(payload: Any) -> Optional[str]:
    """
    Check the shape of a webhook payload

    Returns:
        a human-readable reason, or None when the payload is valid
    """
    if not isinstance(payload, dict):
        return "expected a JSON object"

    if not isinstance(payload.get("object_kind"), str):
        return "Missing or invalid field: object_kind"

    if not isinstance(payload.get("project"), dict):
        return "Missing field: project"

    if payload["object_kind"] == MERGE_REQUEST_KIND:
        attrs = payload.get("object_attributes")
        if not isinstance(attrs, dict):
            return "Missing field: object_attributes"

        if not _is_number(attrs.get("iid")):
            return "Missing or invalid field: object_attributes.iid"

        if not isinstance(attrs.get("action"), str):
            return "Missing or invalid field: object_attributes.action"

        if not isinstance(attrs.get("state"), str):
            return "Missing or invalid field: object_attributes.state"

    return None


def validate_webhook_payload(payload: Any) -> bool:
    return get_validation_error(payload) is None


def merge_request_skip_reason(payload: Dict[str, Any], project_id: str) -> Optional[str]:
    """
    Why a valid merge request event does not trigger a review, or None

    Checked in order: action, state, draft/WIP, project.
    """
    attrs = payload["object_attributes"]
    action = attrs["action"]
    state = attrs["state"]

    if action not in PROCESSABLE_ACTIONS:
        return f"Action '{action}' is not processed (processed: {', '.join(PROCESSABLE_ACTIONS)})"

    if state not in PROCESSABLE_STATES:
        return f"MR state is '{state}', only opened MRs are processed"

    if attrs.get("draft") or attrs.get("work_in_progress"):
        return "Draft/WIP MRs are not processed"

    project = payload["project"]
    webhook_project_id = str(project.get("id"))
    if webhook_project_id != str(project_id) and project.get("path_with_namespace") != str(project_id):
        return f"Project mismatch: webhook({webhook_project_id}) != config({project_id})"

    return None
