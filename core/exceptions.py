"""
Exception hierarchy shared by the review pipeline, LLM providers and the webhook API
"""
from typing import Optional


class ReviewerError(Exception):
    """Base class of all reviewer errors"""


class WebhookValidationError(ReviewerError):
    """Malformed or unauthenticated webhook request"""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class AlreadyProcessing(ReviewerError):
    """The MR is already being reviewed by this process"""

    def __init__(self, mr_iid: int):
        super().__init__(f"MR !{mr_iid} is already being processed")
        self.mr_iid = mr_iid


class ProviderError(ReviewerError):
    """LLM backend failure (non-zero exit, HTTP error, ...)"""


class ProviderUnavailable(ProviderError):
    """Executable, server or model not found"""


class ProviderTimeout(ProviderError):
    """LLM call exceeded its deadline"""


class EmptyResponse(ProviderError):
    """LLM backend returned no output"""


class GitLabAPIError(ReviewerError):
    """GitLab API call failed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(ReviewerError):
    """Usage ledger file could not be read or written"""

    def __init__(self, message: str, entry=None):
        super().__init__(message)
        self.entry = entry
