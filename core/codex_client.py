"""
Codex CLI provider
Runs ``codex exec -`` as a subprocess, prompt on stdin, answer streamed from stdout
"""
import asyncio
import logging
from typing import List, Optional, Sequence

from config.settings import LLM_PROVIDERS
from core.exceptions import EmptyResponse, ProviderError, ProviderTimeout, ProviderUnavailable
from core.llm_provider import ChunkCallback, LLMProvider

logger = logging.getLogger(__name__)

VERSION_PROBE_TIMEOUT_SECONDS = 5
READ_CHUNK_SIZE = 4096


class CodexCliProvider(LLMProvider):
    """Local Codex CLI executable"""

    name = LLM_PROVIDERS["CODEX"]

    def __init__(self, cli_path: str = "codex", timeout_seconds: int = 600,
                 args: Sequence[str] = ("exec", "-")):
        self.cli_path = cli_path
        self.timeout_seconds = timeout_seconds
        self.args = list(args)

    def _not_found(self) -> ProviderUnavailable:
        return ProviderUnavailable(
            f"Codex CLI not found: {self.cli_path}. Check that it is on PATH or use an absolute path."
        )

    @staticmethod
    async def _feed_stdin(process: asyncio.subprocess.Process, prompt: str) -> None:
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # The CLI exited before reading everything; its exit code tells what happened
            logger.debug("Codex CLI closed stdin early")
        finally:
            process.stdin.close()

    @staticmethod
    async def _read_stream(stream: asyncio.StreamReader, sink: List[str],
                           on_chunk: Optional[ChunkCallback] = None) -> None:
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            if not data:
                break
            text = data.decode("utf-8", errors="replace")
            sink.append(text)
            if on_chunk:
                on_chunk(text)

    async def _communicate(self, process: asyncio.subprocess.Process, prompt: str,
                           stdout: List[str], stderr: List[str],
                           on_chunk: Optional[ChunkCallback]) -> int:
        await asyncio.gather(
            self._feed_stdin(process, prompt),
            self._read_stream(process.stdout, stdout, on_chunk),
            self._read_stream(process.stderr, stderr),
        )
        return await process.wait()

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    async def query_stream(self, model: str, prompt: str,
                           on_chunk: Optional[ChunkCallback] = None) -> str:
        logger.info(f"🤖 Querying Codex CLI (timeout: {self.timeout_seconds}s)")
        logger.info(f"  CLI path: {self.cli_path}")

        try:
            process = await asyncio.create_subprocess_exec(
                self.cli_path, *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise self._not_found() from e
        except OSError as e:
            raise ProviderError(f"Codex CLI failed to start: {e}") from e

        stdout: List[str] = []
        stderr: List[str] = []
        try:
            return_code = await asyncio.wait_for(
                self._communicate(process, prompt, stdout, stderr, on_chunk),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            await self._kill(process)
            raise ProviderTimeout(f"Codex CLI timed out ({self.timeout_seconds}s exceeded)") from e
        except BaseException:
            await self._kill(process)
            raise

        output = "".join(stdout)
        error_output = "".join(stderr).strip()

        if return_code != 0:
            message = error_output or f"process exited with code {return_code}"
            logger.error(f"  Codex CLI error: {message}")
            if "ENOENT" in message or "not found" in message:
                raise self._not_found()
            raise ProviderError(f"Codex CLI failed: {message}")

        if not output.strip():
            raise EmptyResponse("Codex CLI returned an empty response")

        logger.info("✓ Codex CLI response received")
        return output.strip()

    async def check_availability(self, model: str) -> bool:
        logger.info("🔍 Checking Codex CLI...")
        logger.info(f"  CLI path: {self.cli_path}")

        try:
            process = await asyncio.create_subprocess_exec(
                self.cli_path, "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError:
            logger.error(f"❌ Codex CLI not found: {self.cli_path}")
            return False

        try:
            await asyncio.wait_for(process.communicate(), timeout=VERSION_PROBE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            await self._kill(process)
            logger.error(f"❌ Codex CLI did not answer --version: {self.cli_path}")
            return False

        if process.returncode == 0:
            logger.info("✓ Codex CLI is available")
            return True

        logger.error(f"❌ Codex CLI --version exited with code {process.returncode}: {self.cli_path}")
        return False
