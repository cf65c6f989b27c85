"""
Application settings
Environment-driven configuration for the GitLab MR AI reviewer
"""
import json
import logging
from typing import Optional, List, Dict
from pydantic import Field
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings"""

    # Service
    service_name: str = Field(default="gitlab-mr-ai-reviewer")
    service_version: str = Field(default="1.0.0")
    log_level: str = Field(default="INFO")

    # GitLab
    gitlab_url: str = Field(default="https://gitlab.com")
    gitlab_token: str = Field(default="")
    gitlab_project_id: str = Field(default="")

    # LLM provider selection: ollama, openai, codex
    llm_provider: str = Field(default="ollama")
    llm_model: str = Field(default="ai-review-model")

    # Ollama
    ollama_url: str = Field(default="http://localhost:11434")
    ollama_timeout_seconds: int = Field(default=600)

    # OpenAI compatible
    openai_api_key: str = Field(default="")
    openai_api_base: Optional[str] = Field(default=None)
    openai_timeout_seconds: int = Field(default=600)

    # Codex CLI
    codex_cli_path: str = Field(default="codex")
    codex_timeout_seconds: int = Field(default=600)

    # Poll scheduler
    check_interval_seconds: int = Field(default=10)

    # Review label and target branch exclusion (JSON array or comma separated)
    ai_review_label: str = Field(default="ai-review")
    exclude_target_branches: str = Field(default="develop,prod,stage")
    exclude_target_branch_patterns: str = Field(default="release")

    # Optional system prompt prepended to every review prompt
    system_prompt_path: Optional[str] = Field(default="AGENTS.md")

    # Usage ledger directory
    usage_log_dir: str = Field(default="data/log")

    # Webhook server
    webhook_host: str = Field(default="0.0.0.0")
    webhook_port: int = Field(default=3000)
    webhook_secret: str = Field(default="")

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
        "extra": "ignore",
    }

    @staticmethod
    def _parse_list(value: Optional[str]) -> List[str]:
        """Parse a JSON array or a comma separated string into a list"""
        if not value or not value.strip():
            return []

        value = value.strip()

        if value.startswith('[') and value.endswith(']'):
            try:
                result = json.loads(value)
                if isinstance(result, list):
                    return [str(item).strip() for item in result if str(item).strip()]
            except json.JSONDecodeError:
                pass

        return [item.strip() for item in value.split(',') if item.strip()]

    @property
    def excluded_branches(self) -> List[str]:
        """Target branch names excluded by exact match"""
        return self._parse_list(self.exclude_target_branches)

    @property
    def excluded_branch_patterns(self) -> List[str]:
        """Substrings that exclude a target branch when contained in its name"""
        return self._parse_list(self.exclude_target_branch_patterns)

    @property
    def provider_timeout_seconds(self) -> int:
        """Timeout of the selected LLM provider"""
        return {
            LLM_PROVIDERS["OLLAMA"]: self.ollama_timeout_seconds,
            LLM_PROVIDERS["OPENAI"]: self.openai_timeout_seconds,
            LLM_PROVIDERS["CODEX"]: self.codex_timeout_seconds,
        }.get(self.llm_provider, self.ollama_timeout_seconds)

    def validate_required(self) -> None:
        """
        Check the values required to run and log the effective configuration

        Raises:
            ValueError: a required value is missing or invalid
        """
        missing = []
        if not self.gitlab_token:
            missing.append("GITLAB_TOKEN")
        if not self.gitlab_project_id:
            missing.append("GITLAB_PROJECT_ID")
        if self.llm_provider == LLM_PROVIDERS["OPENAI"] and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if missing:
            raise ValueError(f"Missing required environment variables: {', '.join(missing)}")

        if self.llm_provider not in LLM_PROVIDERS.values():
            raise ValueError(
                f"LLM_PROVIDER must be one of {list(LLM_PROVIDERS.values())}, got '{self.llm_provider}'"
            )

        logger.info("✓ Configuration validated:")
        logger.info(f"  - GitLab URL: {self.gitlab_url}")
        logger.info(f"  - GitLab Project ID: {self.gitlab_project_id}")
        logger.info(f"  - LLM Provider: {LLM_PROVIDER_NAMES[self.llm_provider]}")
        logger.info(f"  - LLM Model: {self.llm_model}")
        logger.info(f"  - LLM Timeout: {self.provider_timeout_seconds}s")
        logger.info(f"  - Check Interval: {self.check_interval_seconds}s")
        logger.info(f"  - AI Review Label: {self.ai_review_label}")
        logger.info(f"  - Excluded target branches: {self.excluded_branches}")
        logger.info(f"  - Excluded target branch patterns: {self.excluded_branch_patterns}")


# LLM provider identifiers
LLM_PROVIDERS = {
    "OLLAMA": "ollama",
    "OPENAI": "openai",
    "CODEX": "codex",
}

LLM_PROVIDER_NAMES = {
    LLM_PROVIDERS["OLLAMA"]: "Ollama",
    LLM_PROVIDERS["OPENAI"]: "OpenAI",
    LLM_PROVIDERS["CODEX"]: "Codex CLI",
}

# Webhook MR actions that trigger a review
PROCESSABLE_ACTIONS = ["open", "update", "reopen"]

# MR states eligible for review
PROCESSABLE_STATES = ["opened"]

# USD to KRW exchange rate used for cost estimates
USD_TO_KRW_RATE = 1450

# Model prices (USD per 1K tokens)
MODEL_PRICES: Dict[str, Dict[str, float]] = {
    # GPT-4
    "gpt-4": {"input": 0.03, "output": 0.06},
    "gpt-4-turbo": {"input": 0.01, "output": 0.03},
    "gpt-4o": {"input": 0.005, "output": 0.015},
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    # GPT-3.5
    "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
    # o1
    "o1": {"input": 0.015, "output": 0.06},
    "o1-mini": {"input": 0.003, "output": 0.012},
    "o1-preview": {"input": 0.015, "output": 0.06},
    # Local models cost nothing
    "ollama": {"input": 0, "output": 0},
    # Codex CLI runs on a subscription, this is a reference estimate
    "codex": {"input": 0.01, "output": 0.03},
}

# Global settings instance
settings = Settings()
