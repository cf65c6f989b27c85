"""
Review pipeline
Fetches an MR's diffs, asks the configured LLM for a review, posts it back and records usage
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from config.settings import PROCESSABLE_STATES
from core.exceptions import AlreadyProcessing, GitLabAPIError, PersistenceError
from core.gitlab_client import FileChange, GitLabClient, MergeRequestTask
from core.llm_provider import LLMProvider
from core.mr_filter import fetch_target_merge_requests, skip_reason
from core.processing import ProcessingController
from core.prompt_builder import ReviewPrompt, build_review_prompt, load_system_prompt
from core.token_counter import calculate_token_usage, count_tokens
from core.usage_logger import STATUS_FAILED, STATUS_SUCCESS, DiffInfo, UsageLedger, UsageLogEntry

logger = logging.getLogger(__name__)

OUTCOME_REVIEWED = "reviewed"
OUTCOME_FAILED = "failed"
OUTCOME_NO_CHANGES = "no_changes"
OUTCOME_ABORTED = "aborted"
OUTCOME_SKIPPED = "skipped"


@dataclass
class ReviewOutcome:
    """Result of one pipeline run"""
    mr_iid: int
    status: str
    review: Optional[str] = None
    error: Optional[str] = None
    usage_entry: Optional[UsageLogEntry] = None


def build_failure_comment(error_message: str, ai_review_label: str) -> str:
    return (
        "## ⚠️ AI review failed\n"
        "\n"
        "An error occurred during the AI review:\n"
        "\n"
        "```\n"
        f"{error_message}\n"
        "```\n"
        "\n"
        f"To get a new review later, remove the `{ai_review_label}` label."
    )


def summarize_changes(changes: List[FileChange]) -> DiffInfo:
    return DiffInfo(
        file_count=len(changes),
        total_size_bytes=sum(change.size_bytes for change in changes),
        total_lines=sum(change.line_count for change in changes),
    )


class MergeRequestReviewer:
    """AI review of GitLab merge requests"""

    def __init__(self, gitlab_client: GitLabClient, provider: LLMProvider,
                 ledger: UsageLedger, controller: ProcessingController,
                 project_id: str, model: str, ai_review_label: str = "ai-review",
                 exclude_branches: Sequence[str] = (),
                 exclude_patterns: Sequence[str] = (),
                 system_prompt_path: Optional[str] = None,
                 token_counter: Callable[[str, str], int] = count_tokens):
        self.gitlab_client = gitlab_client
        self.provider = provider
        self.ledger = ledger
        self.controller = controller
        self.project_id = str(project_id)
        self.model = model
        self.ai_review_label = ai_review_label
        self.exclude_branches = list(exclude_branches)
        self.exclude_patterns = list(exclude_patterns)
        self.system_prompt_path = system_prompt_path
        self.token_counter = token_counter

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def check_availability(self) -> bool:
        return await self.provider.check_availability(self.model)

    async def process(self, mr: MergeRequestTask) -> ReviewOutcome:
        """Admit and review an already fetched MR"""
        try:
            with self.controller.admit(mr.iid):
                return await self.review(mr)
        except AlreadyProcessing as e:
            logger.info(f"⏭️  {e}, skipping")
            return ReviewOutcome(mr.iid, OUTCOME_SKIPPED, error=str(e))

    async def process_by_iid(self, mr_iid: int) -> ReviewOutcome:
        """
        Webhook path: admit first, then re-read the MR from GitLab so a stale
        event cannot trigger a review of a labeled, approved or closed MR
        """
        try:
            with self.controller.admit(mr_iid):
                try:
                    mr = await self.gitlab_client.get_merge_request(self.project_id, mr_iid)
                except GitLabAPIError as e:
                    logger.error(f"❌ MR !{mr_iid}: could not fetch merge request: {e}")
                    return ReviewOutcome(mr_iid, OUTCOME_ABORTED, error=str(e))

                reason = self._webhook_skip_reason(mr)
                if reason:
                    logger.info(f"⏭️  MR !{mr_iid}: {reason} (skipped)")
                    return ReviewOutcome(mr_iid, OUTCOME_SKIPPED, error=reason)

                return await self.review(mr)
        except AlreadyProcessing as e:
            logger.info(f"⏭️  {e}, skipping")
            return ReviewOutcome(mr_iid, OUTCOME_SKIPPED, error=str(e))

    def _webhook_skip_reason(self, mr: MergeRequestTask) -> Optional[str]:
        if mr.state not in PROCESSABLE_STATES:
            return f"state is {mr.state}"
        return skip_reason(mr, self.ai_review_label, self.exclude_branches, self.exclude_patterns)

    async def process_merge_requests(self) -> List[ReviewOutcome]:
        """Poll path: review every eligible open MR, one after another"""
        logger.info("🔍 Searching for MRs to review...")
        try:
            targets = await fetch_target_merge_requests(
                self.gitlab_client, self.project_id, self.ai_review_label,
                self.exclude_branches, self.exclude_patterns
            )
        except GitLabAPIError as e:
            logger.error(f"Failed to list merge requests: {e}")
            return []

        if not targets:
            logger.info("ℹ️  No MRs to process")
            return []

        outcomes = []
        for mr in targets:
            if self.controller.is_processing(mr.iid):
                logger.info(f"⏭️  MR !{mr.iid} is already being processed, skipping")
                continue
            outcomes.append(await self.process(mr))
        return outcomes

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def review(self, mr: MergeRequestTask) -> ReviewOutcome:
        """
        Run the review of an admitted MR

        The review label is applied on every exit path, label failures are
        only logged.
        """
        logger.info(f"📝 Processing MR !{mr.iid}: {mr.title}")
        try:
            return await self._run_review(mr)
        finally:
            await self._apply_label(mr)

    async def _run_review(self, mr: MergeRequestTask) -> ReviewOutcome:
        try:
            changes = await self.gitlab_client.get_mr_changes(self.project_id, mr.iid)
        except GitLabAPIError as e:
            logger.error(f"❌ MR !{mr.iid}: could not fetch changes: {e}")
            return ReviewOutcome(mr.iid, OUTCOME_ABORTED, error=str(e))

        if not changes:
            logger.info(f"⏭️  MR !{mr.iid} has no changes, skipping")
            return ReviewOutcome(mr.iid, OUTCOME_NO_CHANGES)

        diff_info = summarize_changes(changes)
        logger.info(
            f"✓ {diff_info.file_count} changed file(s), {diff_info.total_size_bytes / 1024:.1f}KB,"
            f" {diff_info.total_lines:,} lines"
        )

        prompt: Optional[ReviewPrompt] = None
        try:
            system_prompt = load_system_prompt(self.system_prompt_path)
            prompt = build_review_prompt(mr, changes, system_prompt)
            logger.info(
                f"📏 Prompt: {len(prompt.prompt):,} chars (diff {prompt.diff_characters:,},"
                f" overhead {prompt.overhead_characters:,})"
            )

            logger.info(f"🔄 Requesting review from {self.provider.display_name}...")
            review = await self.provider.query_stream(self.model, prompt.prompt)

            await self.gitlab_client.add_comment(self.project_id, mr.iid, review)
        except Exception as e:
            logger.error(f"❌ MR !{mr.iid} review failed: {e}", exc_info=True)
            await self._post_failure_comment(mr, e)

            entry = None
            if prompt is not None:
                usage = calculate_token_usage(prompt.prompt, "", self.model, counter=self.token_counter)
                entry = await self._record_usage(
                    mr, usage.prompt_tokens, 0, STATUS_FAILED, diff_info, error_message=str(e)
                )
            return ReviewOutcome(mr.iid, OUTCOME_FAILED, error=str(e), usage_entry=entry)

        usage = calculate_token_usage(prompt.prompt, review, self.model, counter=self.token_counter)
        entry = await self._record_usage(
            mr, usage.prompt_tokens, usage.completion_tokens, STATUS_SUCCESS, diff_info
        )

        logger.info(f"✅ MR !{mr.iid} review complete")
        return ReviewOutcome(mr.iid, OUTCOME_REVIEWED, review=review, usage_entry=entry)

    async def _post_failure_comment(self, mr: MergeRequestTask, error: Exception) -> None:
        try:
            await self.gitlab_client.add_comment(
                self.project_id, mr.iid, build_failure_comment(str(error), self.ai_review_label)
            )
        except GitLabAPIError as comment_error:
            logger.error(f"Failed to post failure comment on MR !{mr.iid}: {comment_error}")

    async def _apply_label(self, mr: MergeRequestTask) -> None:
        try:
            await self.gitlab_client.add_label(self.project_id, mr.iid, self.ai_review_label)
        except GitLabAPIError as e:
            logger.error(f"Failed to add label to MR !{mr.iid}: {e}")

    async def _record_usage(self, mr: MergeRequestTask, prompt_tokens: int,
                            completion_tokens: int, status: str, diff_info: DiffInfo,
                            error_message: Optional[str] = None) -> Optional[UsageLogEntry]:
        try:
            return await asyncio.to_thread(
                self.ledger.record,
                mr_title=mr.title,
                mr_url=mr.web_url,
                project_id=self.project_id,
                mr_iid=mr.iid,
                model=self.model,
                provider=self.provider.name,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                status=status,
                error_message=error_message,
                diff_info=diff_info,
            )
        except PersistenceError as e:
            logger.error(f"Failed to save usage log for MR !{mr.iid}: {e}")
            return e.entry
