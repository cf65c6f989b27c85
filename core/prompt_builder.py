"""
Review prompt construction
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from core.gitlab_client import FileChange, MergeRequestTask

logger = logging.getLogger(__name__)


@dataclass
class ReviewPrompt:
    """Built prompt plus size figures of its parts"""
    prompt: str
    diff_characters: int
    diff_lines: int
    overhead_characters: int
    overhead_lines: int


def load_system_prompt(path: Optional[str]) -> Optional[str]:
    """
    Read the optional system prompt file (AGENTS.md etc.)

    A missing file is normal and only logged.
    """
    if not path:
        return None

    prompt_path = Path(path)
    if not prompt_path.is_file():
        logger.info(f"System prompt file not found ({path}), continuing without it")
        return None

    content = prompt_path.read_text(encoding="utf-8").strip()
    if not content:
        logger.info(f"System prompt file is empty ({path})")
        return None

    logger.info(f"✓ System prompt loaded from {path} ({len(content):,} chars)")
    return content


def format_changes(changes: List[FileChange]) -> str:
    """Render file diffs as tagged blocks"""
    blocks = [
        f"\n[{change.edit_type}] {change.new_path}\n---\n{change.diff}\n---\n"
        for change in changes
    ]
    return "\n".join(blocks)


def build_mr_header(mr: MergeRequestTask) -> str:
    return (
        "# Merge Request\n"
        f"- Title: {mr.title}\n"
        f"- Description: {mr.description or 'No description'}\n"
        f"- URL: {mr.web_url}\n"
        "\n"
        "# Code Changes\n"
    )


def _line_count(text: str) -> int:
    return len(text.split("\n")) if text else 0


def build_review_prompt(mr: MergeRequestTask, changes: List[FileChange],
                        system_prompt: Optional[str] = None) -> ReviewPrompt:
    """System prompt (if any), MR header and formatted diffs, in that order"""
    formatted_changes = format_changes(changes)
    header = build_mr_header(mr)

    prefix = f"{system_prompt}\n\n" if system_prompt else ""
    prompt = f"{prefix}{header}{formatted_changes}"

    return ReviewPrompt(
        prompt=prompt,
        diff_characters=len(formatted_changes),
        diff_lines=_line_count(formatted_changes),
        overhead_characters=len(header) + len(system_prompt or ""),
        overhead_lines=_line_count(header) + _line_count(system_prompt or ""),
    )
