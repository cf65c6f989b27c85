"""
OpenAI compatible provider
Streams chat completions through the official openai SDK
"""
import asyncio
import logging
import time
from typing import List, Optional

import openai

from config.settings import LLM_PROVIDERS
from core.exceptions import EmptyResponse, ProviderError, ProviderTimeout, ProviderUnavailable
from core.llm_provider import ChunkCallback, LLMProvider

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """Hosted OpenAI (or OpenAI compatible) chat completion API"""

    name = LLM_PROVIDERS["OPENAI"]

    def __init__(self, api_key: str, base_url: Optional[str] = None,
                 timeout_seconds: int = 600, client: Optional[openai.AsyncOpenAI] = None):
        if not api_key and client is None:
            raise ValueError("API key is required")

        self.timeout_seconds = timeout_seconds

        if client is not None:
            self.client = client
        else:
            client_kwargs = {
                "api_key": api_key,
                "timeout": float(timeout_seconds),
                "max_retries": 0,
            }
            if base_url:
                client_kwargs["base_url"] = base_url
                logger.info(f"OpenAI client using custom base URL: {base_url}")
            self.client = openai.AsyncOpenAI(**client_kwargs)

    async def _stream(self, model: str, prompt: str,
                      on_chunk: Optional[ChunkCallback]) -> str:
        stream = await self.client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            stream=True,
        )

        chunks: List[str] = []
        async for chunk in stream:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content or ""
            if content:
                chunks.append(content)
                if on_chunk:
                    on_chunk(content)
        return "".join(chunks)

    async def query_stream(self, model: str, prompt: str,
                           on_chunk: Optional[ChunkCallback] = None) -> str:
        logger.info(f"🤖 Streaming query to OpenAI model {model}")
        start_time = time.time()

        try:
            response = await asyncio.wait_for(
                self._stream(model, prompt, on_chunk),
                timeout=self.timeout_seconds
            )
        except (asyncio.TimeoutError, openai.APITimeoutError) as e:
            raise ProviderTimeout(f"OpenAI response timed out ({self.timeout_seconds}s exceeded)") from e
        except openai.NotFoundError as e:
            raise ProviderUnavailable(f"OpenAI model '{model}' not found: {e}") from e
        except openai.APIConnectionError as e:
            raise ProviderUnavailable(f"Cannot reach OpenAI API: {e}") from e
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI query failed: {e}") from e

        if not response.strip():
            raise EmptyResponse("OpenAI returned an empty response")

        logger.info(f"✓ OpenAI response received ({time.time() - start_time:.1f}s)")
        return response

    async def check_availability(self, model: str) -> bool:
        logger.info(f"🔍 Checking OpenAI model \"{model}\"...")
        try:
            page = await self.client.models.list()
            available = [m.id for m in page.data]
        except openai.OpenAIError as e:
            logger.error(f"❌ OpenAI connection failed: {e}")
            return False

        if model in available:
            logger.info(f"✓ Model \"{model}\" is available")
            return True

        # Hosted APIs serve models missing from the public listing
        logger.warning(f"⚠️  Model \"{model}\" not in the model listing, continuing anyway")
        logger.info("  Listed models (first 10):")
        for name in available[:10]:
            logger.info(f"    - {name}")
        return True
