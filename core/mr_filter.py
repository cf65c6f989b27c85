"""
Target MR selection
Decides which open MRs are eligible for an AI review
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.gitlab_client import GitLabClient, MergeRequestTask

logger = logging.getLogger(__name__)


def is_approved(approval_state: Dict[str, Any]) -> bool:
    """
    Derive approval from the raw MR fields, first match wins:
    explicit ``approved`` flag, ``detailed_merge_status``, mergeable with no
    required approvals, legacy ``approvals.approved``
    """
    if "approved" in approval_state:
        return bool(approval_state["approved"])

    if approval_state.get("detailed_merge_status") == "approved":
        return True

    if (approval_state.get("merge_status") == "can_be_merged"
            and approval_state.get("approvals_before_merge") == 0):
        return True

    approvals = approval_state.get("approvals")
    if isinstance(approvals, dict) and approvals.get("approved"):
        return True

    return False


def is_excluded_target_branch(target_branch: str,
                              exact_matches: Sequence[str],
                              patterns: Sequence[str]) -> Tuple[bool, Optional[str]]:
    """
    Check a target branch against the exclusion rules

    Args:
        target_branch: MR target branch
        exact_matches: branch names excluded on exact match (e.g. "develop")
        patterns: substrings excluding any branch containing them (e.g. "release")

    Returns:
        (excluded, reason)
    """
    if target_branch in exact_matches:
        return True, f"excluded target branch ({target_branch})"

    for pattern in patterns:
        if pattern and pattern in target_branch:
            return True, f"excluded pattern ({pattern} in {target_branch})"

    return False, None


def skip_reason(mr: MergeRequestTask, ai_review_label: str,
                exclude_exact: Sequence[str],
                exclude_patterns: Sequence[str]) -> Optional[str]:
    """Why an MR is not eligible, or None when it is"""
    if ai_review_label in mr.labels:
        return f"already labeled {ai_review_label}"

    if is_approved(mr.approval_state):
        return "already approved"

    excluded, reason = is_excluded_target_branch(mr.target_branch, exclude_exact, exclude_patterns)
    if excluded:
        return reason

    return None


def select_targets(all_open_mrs: List[MergeRequestTask], ai_review_label: str,
                   exclude_exact: Sequence[str] = (),
                   exclude_patterns: Sequence[str] = ()) -> List[MergeRequestTask]:
    """Filter already-fetched open MRs down to the review targets"""
    targets = []
    for mr in all_open_mrs:
        reason = skip_reason(mr, ai_review_label, exclude_exact, exclude_patterns)
        if reason is None:
            logger.info(f"  ✓ MR !{mr.iid}: \"{mr.title}\" - review target (target: {mr.target_branch})")
            targets.append(mr)
        else:
            logger.info(f"  ⏭️  MR !{mr.iid}: \"{mr.title}\" - {reason} (skipped)")

    logger.info(f"  → {len(targets)} MR(s) to review")
    return targets


async def fetch_target_merge_requests(client: GitLabClient, project_id: str,
                                      ai_review_label: str,
                                      exclude_exact: Sequence[str] = (),
                                      exclude_patterns: Sequence[str] = ()) -> List[MergeRequestTask]:
    """List open MRs and keep the eligible ones; GitLab errors propagate"""
    all_open_mrs = await client.list_open_merge_requests(project_id)
    return select_targets(all_open_mrs, ai_review_label, exclude_exact, exclude_patterns)
