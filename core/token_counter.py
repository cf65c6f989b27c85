"""
Token counting with tiktoken
"""
import logging
from dataclasses import dataclass
from functools import lru_cache

import tiktoken

logger = logging.getLogger(__name__)

# Encodings of models tiktoken may not know by name
MODEL_ENCODING_MAP = {
    "gpt-4": "cl100k_base",
    "gpt-4-turbo": "cl100k_base",
    "gpt-4-32k": "cl100k_base",
    "gpt-3.5-turbo": "cl100k_base",
    "gpt-4o": "o200k_base",
    "gpt-4o-mini": "o200k_base",
    "o1": "o200k_base",
    "o1-mini": "o200k_base",
    "o1-preview": "o200k_base",
}

# Newer model families (and local models) use the latest encoding
DEFAULT_ENCODING = "o200k_base"


@lru_cache(maxsize=32)
def _encoding_for(model: str) -> "tiktoken.Encoding":
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding(MODEL_ENCODING_MAP.get(model.lower(), DEFAULT_ENCODING))


def count_tokens(text: str, model: str = "gpt-4o") -> int:
    """Number of tokens of ``text`` for ``model``"""
    if not text:
        return 0
    return len(_encoding_for(model).encode(text, disallowed_special=()))


@dataclass
class TokenUsage:
    """Token usage of one LLM call"""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


def calculate_token_usage(prompt: str, completion: str, model: str = "gpt-4o",
                          counter=count_tokens) -> TokenUsage:
    """Token usage of a prompt/completion pair"""
    usage = TokenUsage(
        prompt_tokens=counter(prompt, model),
        completion_tokens=counter(completion, model) if completion else 0,
    )
    logger.info(
        f"📊 Token usage: prompt {usage.prompt_tokens:,} / completion {usage.completion_tokens:,}"
        f" / total {usage.total_tokens:,}"
    )
    return usage
