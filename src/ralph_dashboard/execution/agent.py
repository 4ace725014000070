"""External coding agent (claude CLI) runner.

The agent is started as an async subprocess with the prompt on stdin.
Its merged stdout/stderr is read line by line, optionally forwarded to a
callback (the dashboard streams it over SSE), and the whole call is bounded
by a timeout. A timed-out process is terminated, then killed.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ralph_dashboard.core.config import get_config
from ralph_dashboard.core.exceptions import AgentTimeoutError, UpstreamError

logger = logging.getLogger(__name__)

# Raw output kept on errors
RAW_EXCERPT_CHARS = 1000

# Longest single output line (stream-json events can be large)
STREAM_LIMIT = 16 * 1024 * 1024

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

OutputCallback = Callable[[str], Awaitable[None]]


@dataclass
class AgentResult:
    """Outcome of one agent invocation.

    Attributes:
        output: Full merged stdout/stderr.
        returncode: Process exit code.
        duration: Wall-clock seconds.

    """

    output: str
    returncode: int
    duration: float

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def raw(self) -> str:
        """Tail of the output for error reports."""
        return self.output[-RAW_EXCERPT_CHARS:]


def extract_json(output: str) -> Any:
    """Parse the outermost JSON object in agent output.

    Raises:
        UpstreamError: If there is no parsable JSON object.

    """
    match = _JSON_OBJECT_RE.search(output)
    if match is None:
        raise UpstreamError("No JSON found in agent response", raw=output[:RAW_EXCERPT_CHARS])
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise UpstreamError(
            f"Failed to parse agent JSON: {e}", raw=output[:RAW_EXCERPT_CHARS]
        ) from e


class AgentRunner:
    """Run the agent CLI.

    Args:
        cwd: Working directory for the agent (the project root).
        command: CLI invocation; defaults to execution.claude_command.
        stream_limit: Longest output line in bytes.

    """

    def __init__(
        self,
        cwd: Path | str | None = None,
        command: list[str] | None = None,
        stream_limit: int = STREAM_LIMIT,
    ) -> None:
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self.command = command or list(get_config().execution.claude_command)
        self.stream_limit = stream_limit

    async def run(
        self,
        prompt: str,
        timeout: float,
        on_output: OutputCallback | None = None,
    ) -> AgentResult:
        """Run the agent with a prompt.

        Args:
            prompt: Prompt text fed on stdin.
            timeout: Seconds before the process is killed.
            on_output: Awaited with each output line.

        Returns:
            AgentResult with exit code and output.

        Raises:
            AgentTimeoutError: If the agent ran longer than timeout.
            UpstreamError: If the agent could not be started or its output
                could not be read.

        """
        logger.info("Starting agent: %s (timeout %ss)", " ".join(self.command), timeout)
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=self.cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=self.stream_limit,
            )
        except OSError as e:
            raise UpstreamError(f"Cannot start agent {self.command[0]}: {e}") from e

        lines: list[str] = []

        async def communicate() -> None:
            if process.stdin is not None:
                # Agent may exit without reading the whole prompt
                with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                    process.stdin.write(prompt.encode())
                    await process.stdin.drain()
                process.stdin.close()
            if process.stdout is not None:
                async for raw_line in process.stdout:
                    text = raw_line.decode(errors="replace").rstrip("\n")
                    lines.append(text)
                    if on_output is not None:
                        await on_output(text)
            await process.wait()

        try:
            await asyncio.wait_for(communicate(), timeout=timeout)
        except TimeoutError as e:
            await self._terminate(process)
            output = "\n".join(lines)
            logger.warning("Agent timed out after %ss", timeout)
            raise AgentTimeoutError(
                f"Agent timed out after {timeout:g}s",
                timeout=timeout,
                raw=output[-RAW_EXCERPT_CHARS:],
            ) from e
        except (ValueError, OSError) as e:
            # ValueError: a line longer than stream_limit
            await self._terminate(process)
            output = "\n".join(lines)
            logger.warning("Agent output unreadable: %s", e)
            raise UpstreamError(
                f"Agent output unreadable: {e}", raw=output[-RAW_EXCERPT_CHARS:] or None
            ) from e
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        duration = time.monotonic() - started
        returncode = process.returncode if process.returncode is not None else -1
        logger.info("Agent exited with code %d after %.1fs", returncode, duration)
        return AgentResult(output="\n".join(lines), returncode=returncode, duration=duration)

    async def run_json(self, prompt: str, timeout: float) -> Any:
        """Run the agent and parse a JSON object from its output.

        Raises:
            UpstreamError: On non-zero exit or unparsable output.

        """
        result = await self.run(prompt, timeout)
        if not result.success:
            raise UpstreamError(f"Agent exited with code {result.returncode}", raw=result.raw)
        return extract_json(result.output)

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL after 5 seconds."""
        if process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
