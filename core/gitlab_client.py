"""
GitLab client module
Thin async wrapper over python-gitlab for the operations the review pipeline needs
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

import gitlab
import requests

from core.exceptions import GitLabAPIError

logger = logging.getLogger(__name__)

# Raw MR fields consulted when deciding whether an MR is already approved
APPROVAL_FIELDS = (
    "approved",
    "detailed_merge_status",
    "merge_status",
    "approvals_before_merge",
    "approvals",
)


class MergeRequestTask:
    """Open MR as read from GitLab, discarded once the pipeline completes"""

    def __init__(self, id: int, iid: int, title: str, description: str,
                 web_url: str, labels: Set[str], state: str,
                 source_branch: str, target_branch: str,
                 approval_state: Optional[Dict[str, Any]] = None,
                 draft: bool = False):
        self.id = id
        self.iid = iid
        self.title = title
        self.description = description
        self.web_url = web_url
        self.labels = labels
        self.state = state
        self.source_branch = source_branch
        self.target_branch = target_branch
        self.approval_state = approval_state or {}
        self.draft = draft

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "MergeRequestTask":
        """Build from a GitLab MR attributes dict"""
        return cls(
            id=data.get("id"),
            iid=data.get("iid"),
            title=data.get("title") or "",
            description=data.get("description") or "",
            web_url=data.get("web_url") or "",
            labels=set(data.get("labels") or []),
            state=data.get("state") or "",
            source_branch=data.get("source_branch") or "",
            target_branch=data.get("target_branch") or "",
            approval_state={key: data[key] for key in APPROVAL_FIELDS if key in data},
            draft=bool(data.get("draft") or data.get("work_in_progress")),
        )

    def __repr__(self) -> str:
        return f"MergeRequestTask(iid={self.iid}, title={self.title!r}, target={self.target_branch!r})"


class FileChange:
    """One changed file of an MR"""

    def __init__(self, new_path: str, old_path: str, diff: str,
                 new_file: bool = False, deleted_file: bool = False,
                 renamed_file: bool = False):
        self.new_path = new_path
        self.old_path = old_path
        self.diff = diff or ""
        self.new_file = new_file
        self.deleted_file = deleted_file
        self.renamed_file = renamed_file

    @classmethod
    def from_api(cls, change: Dict[str, Any]) -> "FileChange":
        return cls(
            new_path=change.get("new_path", ""),
            old_path=change.get("old_path", ""),
            diff=change.get("diff", ""),
            new_file=bool(change.get("new_file", False)),
            deleted_file=bool(change.get("deleted_file", False)),
            renamed_file=bool(change.get("renamed_file", False)),
        )

    @property
    def edit_type(self) -> str:
        if self.new_file:
            return "NEW"
        elif self.deleted_file:
            return "DELETED"
        elif self.renamed_file:
            return "RENAMED"
        else:
            return "MODIFIED"

    @property
    def size_bytes(self) -> int:
        return len(self.diff.encode("utf-8"))

    @property
    def line_count(self) -> int:
        return len(self.diff.splitlines())


class GitLabClient:
    """GitLab API client"""

    def __init__(self, gitlab_url: str, access_token: str):
        self.gitlab_url = gitlab_url.rstrip('/')
        self.gitlab = gitlab.Gitlab(self.gitlab_url, private_token=access_token)

    async def _call(self, description: str, func: Callable, *args, **kwargs):
        """Run a blocking python-gitlab call in a worker thread, mapping its errors"""
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except gitlab.exceptions.GitlabError as e:
            logger.error(f"{description} failed (HTTP {e.response_code}): {e.error_message}")
            raise GitLabAPIError(f"{description} failed: {e.error_message}", e.response_code) from e
        except requests.exceptions.RequestException as e:
            logger.error(f"{description} failed: {e}")
            raise GitLabAPIError(f"{description} failed: {e}") from e

    def _project(self, project_id: str):
        return self.gitlab.projects.get(project_id, lazy=True)

    async def list_open_merge_requests(self, project_id: str) -> List[MergeRequestTask]:
        """List all open MRs of a project"""
        logger.info(f"  Fetching open MRs of project {project_id}...")

        def fetch():
            mrs = self._project(project_id).mergerequests.list(state="opened", get_all=True)
            return [mr.attributes for mr in mrs]

        items = await self._call(f"Listing open MRs of project {project_id}", fetch)
        logger.info(f"  Found {len(items)} open MRs")
        return [MergeRequestTask.from_api(item) for item in items]

    async def get_merge_request(self, project_id: str, mr_iid: int) -> MergeRequestTask:
        """Fetch a single MR by iid"""
        def fetch():
            return self._project(project_id).mergerequests.get(mr_iid).attributes

        data = await self._call(f"Fetching MR !{mr_iid}", fetch)
        return MergeRequestTask.from_api(data)

    async def get_mr_changes(self, project_id: str, mr_iid: int) -> List[FileChange]:
        """Fetch the per-file diffs of an MR"""
        def fetch():
            mr = self._project(project_id).mergerequests.get(mr_iid)
            return mr.changes().get("changes", [])

        changes = await self._call(f"Fetching changes of MR !{mr_iid}", fetch)
        return [FileChange.from_api(change) for change in changes]

    async def add_comment(self, project_id: str, mr_iid: int, body: str) -> None:
        """Create a note on an MR"""
        def create():
            mr = self._project(project_id).mergerequests.get(mr_iid, lazy=True)
            mr.notes.create({"body": body})

        await self._call(f"Commenting on MR !{mr_iid}", create)
        logger.info(f"✓ Comment added to MR !{mr_iid}")

    async def add_label(self, project_id: str, mr_iid: int, label: str) -> bool:
        """
        Add a label to an MR

        Returns:
            False if the MR already carried the label
        """
        def update() -> bool:
            mr = self._project(project_id).mergerequests.get(mr_iid)
            current = list(mr.labels or [])
            if label in current:
                return False
            mr.labels = current + [label]
            mr.save()
            return True

        added = await self._call(f"Labeling MR !{mr_iid}", update)
        if added:
            logger.info(f"✓ Label \"{label}\" added to MR !{mr_iid}")
        else:
            logger.info(f"MR !{mr_iid} already has label \"{label}\"")
        return added
