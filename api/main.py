"""
FastAPI application - GitLab webhook receiver
"""
import logging
from datetime import datetime
from typing import Any, Dict

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.webhook import (
    MERGE_REQUEST_KIND,
    get_validation_error,
    merge_request_skip_reason,
    verify_webhook_secret,
)
from config.settings import settings
from core.exceptions import WebhookValidationError
from core.reviewer import MergeRequestReviewer

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    timestamp: str


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": True,
            "message": message,
            "status_code": status_code,
            "timestamp": datetime.now().isoformat()
        }
    )


async def run_webhook_review(reviewer: MergeRequestReviewer, mr_iid: int) -> None:
    """
    Background review of a webhook-triggered MR

    Failures surface only through the log, the MR comment and the usage ledger.
    """
    try:
        outcome = await reviewer.process_by_iid(mr_iid)
        logger.info(f"Webhook review of MR !{mr_iid} finished: {outcome.status}")
    except Exception as e:
        logger.error(f"Webhook review of MR !{mr_iid} failed: {e}", exc_info=True)


def create_app(reviewer: MergeRequestReviewer, project_id: str,
               webhook_secret: str = "") -> FastAPI:
    """
    Build the webhook application

    Args:
        reviewer: pipeline the accepted MR events are dispatched to
        project_id: configured project (numeric id or path_with_namespace)
        webhook_secret: expected X-Gitlab-Token, empty disables the check
    """
    app = FastAPI(
        title="GitLab MR AI Reviewer",
        description="Reviews GitLab merge requests with an LLM",
        version=settings.service_version,
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        return HealthResponse(
            status="ok",
            version=settings.service_version,
            timestamp=datetime.now().isoformat()
        )

    @app.post("/webhook/gitlab")
    async def gitlab_webhook(request: Request, background_tasks: BackgroundTasks):
        """
        Receive a GitLab webhook

        Valid merge request events are answered with 202 and reviewed in the background.
        """
        logger.info("🔔 Webhook request received")

        if webhook_secret:
            if not verify_webhook_secret(request.headers.get("x-gitlab-token"), webhook_secret):
                logger.warning("  ❌ Webhook secret verification failed")
                raise WebhookValidationError(
                    "Unauthorized: Invalid webhook secret", status.HTTP_401_UNAUTHORIZED
                )
        else:
            logger.warning("  ⚠️  WEBHOOK_SECRET is not set, accepting unauthenticated requests")

        try:
            payload: Any = await request.json()
        except ValueError:
            payload = None

        error = get_validation_error(payload)
        if error:
            logger.warning(f"  ❌ Invalid payload: {error}")
            raise WebhookValidationError(f"Invalid payload: {error}", status.HTTP_400_BAD_REQUEST)

        object_kind = payload["object_kind"]
        if object_kind != MERGE_REQUEST_KIND:
            message = f"Unsupported webhook type: {object_kind}"
            logger.info(f"  ⏭️  {message}")
            return {"status": "skipped", "message": message}

        attrs = payload["object_attributes"]
        mr_iid = attrs["iid"]
        action = attrs["action"]
        logger.info(f"  MR !{mr_iid} - {action}: {attrs.get('title', '')}")
        logger.info(f"  Branch: {attrs.get('source_branch')} → {attrs.get('target_branch')}")

        reason = merge_request_skip_reason(payload, project_id)
        if reason:
            logger.info(f"  ⏭️  {reason}")
            return {"status": "skipped", "message": reason, "mr_iid": mr_iid, "action": action}

        background_tasks.add_task(run_webhook_review, reviewer, mr_iid)

        body: Dict[str, Any] = {
            "status": "accepted",
            "message": f"MR !{mr_iid} processing started",
            "mr_iid": mr_iid,
            "action": action,
        }
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc):
        logger.error(f"HTTP {exc.status_code}: {exc.detail}")
        return error_response(exc.status_code, exc.detail)

    @app.exception_handler(WebhookValidationError)
    async def webhook_validation_handler(request, exc):
        return error_response(exc.status_code, str(exc))

    @app.exception_handler(Exception)
    async def general_exception_handler(request, exc):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return error_response(500, "Internal server error")

    return app
