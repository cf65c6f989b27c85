"""
Ollama provider
Streams /api/generate from a local Ollama server over aiohttp
"""
import asyncio
import json
import logging
import time
from typing import List, Optional

import aiohttp

from config.settings import LLM_PROVIDERS
from core.exceptions import EmptyResponse, ProviderError, ProviderTimeout, ProviderUnavailable
from core.llm_provider import ChunkCallback, LLMProvider

logger = logging.getLogger(__name__)


class OllamaProvider(LLMProvider):
    """Local Ollama model server"""

    name = LLM_PROVIDERS["OLLAMA"]

    def __init__(self, base_url: str, timeout_seconds: int = 600):
        self.base_url = base_url.rstrip('/')
        self.timeout_seconds = timeout_seconds

    def _session(self) -> aiohttp.ClientSession:
        # Deadline is enforced by query_stream, not by aiohttp's default 5 minute total
        return aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))

    @staticmethod
    def _error_message(body: str) -> str:
        try:
            return json.loads(body).get("error") or body
        except (ValueError, AttributeError):
            return body

    async def _generate(self, model: str, prompt: str,
                        on_chunk: Optional[ChunkCallback]) -> str:
        chunks: List[str] = []
        payload = {"model": model, "prompt": prompt, "stream": True}

        async with self._session() as session:
            async with session.post(f"{self.base_url}/api/generate", json=payload) as resp:
                if resp.status != 200:
                    message = self._error_message(await resp.text())
                    if resp.status == 404 or "not found" in message:
                        raise ProviderUnavailable(f"Ollama model '{model}' not found: {message}")
                    raise ProviderError(f"Ollama request failed (HTTP {resp.status}): {message}")

                async for line in resp.content:
                    line = line.strip()
                    if not line:
                        continue
                    data = json.loads(line)
                    if data.get("error"):
                        raise ProviderError(f"Ollama stream error: {data['error']}")
                    piece = data.get("response")
                    if piece:
                        chunks.append(piece)
                        if on_chunk:
                            on_chunk(piece)
                    if data.get("done"):
                        break

        return "".join(chunks)

    async def query_stream(self, model: str, prompt: str,
                           on_chunk: Optional[ChunkCallback] = None) -> str:
        logger.info(f"🤖 Streaming query to Ollama model {model} (timeout: {self.timeout_seconds}s)")
        start_time = time.time()

        try:
            response = await asyncio.wait_for(
                self._generate(model, prompt, on_chunk),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise ProviderTimeout(f"Ollama response timed out ({self.timeout_seconds}s exceeded)") from e
        except aiohttp.ClientConnectorError as e:
            raise ProviderUnavailable(f"Cannot reach Ollama at {self.base_url}: {e}") from e
        except aiohttp.ClientError as e:
            raise ProviderError(f"Ollama request failed: {e}") from e
        except json.JSONDecodeError as e:
            raise ProviderError(f"Malformed Ollama stream: {e}") from e

        if not response.strip():
            raise EmptyResponse("Ollama returned an empty response")

        logger.info(f"✓ Ollama response received ({time.time() - start_time:.1f}s)")
        return response

    async def check_availability(self, model: str) -> bool:
        try:
            async with self._session() as session:
                async with session.get(f"{self.base_url}/api/tags") as resp:
                    resp.raise_for_status()
                    data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Ollama model check failed: {e}")
            return False

        names = [m.get("name", "") for m in data.get("models", [])]
        if model in names or f"{model}:latest" in names:
            logger.info(f"✓ Ollama model \"{model}\" is available")
            return True

        logger.warning(f"⚠️  Ollama model \"{model}\" not found")
        logger.info("Installed models:")
        for name in names:
            logger.info(f"  - {name}")
        return False
