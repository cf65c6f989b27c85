"""
Mock LLM provider and token counter for tests
"""
import asyncio
from typing import List, Optional

from core.llm_provider import ChunkCallback, LLMProvider


def fake_token_counter(text: str, model: str) -> int:
    """One token per whitespace separated word, no tiktoken download"""
    return len(text.split())


class FakeProvider(LLMProvider):
    """Scripted LLM provider"""

    name = "openai"

    def __init__(self, response: str = "Looks good to me.", error: Optional[Exception] = None,
                 available: bool = True, delay: float = 0):
        self.response = response
        self.error = error
        self.available = available
        self.delay = delay
        self.prompts: List[str] = []

    async def query_stream(self, model: str, prompt: str,
                           on_chunk: Optional[ChunkCallback] = None) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        if on_chunk:
            on_chunk(self.response)
        return self.response

    async def check_availability(self, model: str) -> bool:
        return self.available
