"""
Shared fixtures
"""
import pytest

from core.processing import ProcessingController
from core.reviewer import MergeRequestReviewer
from core.usage_logger import UsageLedger
from mock_gitlab_client import MockGitLabClient
from mock_llm_provider import FakeProvider, fake_token_counter

PROJECT_ID = "42"
MODEL = "gpt-4o"


@pytest.fixture
def mock_gitlab():
    return MockGitLabClient()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def ledger(tmp_path):
    return UsageLedger(tmp_path / "log")


@pytest.fixture
def controller():
    return ProcessingController()


@pytest.fixture
def make_reviewer(mock_gitlab, provider, ledger, controller, tmp_path):
    def factory(**overrides) -> MergeRequestReviewer:
        kwargs = dict(
            gitlab_client=mock_gitlab,
            provider=provider,
            ledger=ledger,
            controller=controller,
            project_id=PROJECT_ID,
            model=MODEL,
            ai_review_label="ai-review",
            exclude_branches=["develop", "prod", "stage"],
            exclude_patterns=["release"],
            system_prompt_path=str(tmp_path / "AGENTS.md"),
            token_counter=fake_token_counter,
        )
        kwargs.update(overrides)
        return MergeRequestReviewer(**kwargs)
    return factory


@pytest.fixture
def reviewer(make_reviewer):
    return make_reviewer()
