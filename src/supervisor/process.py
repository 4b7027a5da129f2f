"""Runs one external worker process and watches it until it exits.

The worker reads a single prompt on stdin and writes newline-delimited JSON
events, possibly mixed with plain text. Lines are parsed best-effort for
progress logging; a line that is not JSON is just text. On success the
worker prints one ``<MARKER>=<value>`` line, found by pattern over the whole
output rather than by structured parsing.

Any output on stdout or stderr counts as activity. A watchdog kills the
worker after ``inactivity_timeout`` seconds of silence; that is reported as
TIMED_OUT, distinct from FAILED (nonzero exit).
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import re
import shlex
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from src.config import settings

logger = logging.getLogger(__name__)

_PREVIEW_KEYS = ("text", "content", "result", "message", "delta")
_PREVIEW_MAX = 120
_READ_CHUNK = 4096


class SessionState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class SupervisorResult:
    state: SessionState
    exit_code: Optional[int]
    result_token: Optional[str]
    stdout: str
    stderr: str
    duration: float
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state is SessionState.SUCCEEDED


def extract_result_token(output: str, marker: str = "DEPLOYED_URL") -> Optional[str]:
    """Value of the last ``marker=value`` in ``output``.

    The value stops at whitespace, a quote or a backslash, so a marker echoed
    inside a JSON string yields the bare value. Placeholders such as
    ``<url>`` do not match.
    """
    pattern = re.compile(re.escape(marker) + r"=([^\s'\"\\<>]+)")
    matches = pattern.findall(output)
    return matches[-1] if matches else None


def _first_text(node: object, depth: int = 0) -> Optional[str]:
    if depth > 6:
        return None
    if isinstance(node, str):
        return node if node.strip() else None
    if isinstance(node, list):
        for item in node:
            found = _first_text(item, depth + 1)
            if found:
                return found
        return None
    if isinstance(node, dict):
        for key in _PREVIEW_KEYS:
            if key in node:
                found = _first_text(node[key], depth + 1)
                if found:
                    return found
    return None


def preview_line(line: str) -> Optional[str]:
    """Short progress preview for one output line; None if it has nothing to show."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        event = json.loads(stripped)
    except ValueError:
        text = stripped
    else:
        text = _first_text(event)
        if text is None:
            kind = event.get("type") if isinstance(event, dict) else None
            return f"[{kind}]" if kind else None
    first = text.strip().splitlines()[0] if text.strip() else ""
    return first[:_PREVIEW_MAX] or None


class LineBuffer:
    """Splits a byte stream into complete text lines, keeping the partial tail."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._decoder.decode(chunk)
        *lines, self._pending = self._pending.split("\n")
        return lines

    def flush(self) -> list[str]:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return [tail] if tail else []


class ProcessSupervisor:
    def __init__(
        self,
        command: list[str] | str | None = None,
        *,
        inactivity_timeout: float | None = None,
        check_interval: float | None = None,
        progress_interval: float | None = None,
        result_marker: str | None = None,
        cancel_check: Callable[[], Awaitable[bool]] | None = None,
        cancel_poll_interval: float | None = None,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> None:
        command = command or settings.supervisor_command
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.inactivity_timeout = inactivity_timeout or settings.supervisor_inactivity_timeout_seconds
        self.check_interval = check_interval or settings.supervisor_check_interval_seconds
        self.progress_interval = progress_interval or settings.supervisor_progress_interval_seconds
        self.result_marker = result_marker or settings.supervisor_result_marker
        self.cancel_check = cancel_check
        self.cancel_poll_interval = cancel_poll_interval or settings.supervisor_cancel_poll_seconds
        self.cancel_checks = 0
        self.env = env
        self.cwd = cwd

        self.state = SessionState.STARTING
        self.pid: Optional[int] = None
        self.started_at = 0.0
        self.last_output_at = 0.0
        self._stdout: list[str] = []
        self._stderr: list[str] = []
        self._stop_reason: Optional[SessionState] = None
        self._stop_detail = ""

    def _touch(self) -> None:
        self.last_output_at = time.monotonic()

    def _handle_line(self, line: str) -> None:
        if f"{self.result_marker}=" in line:
            token = extract_result_token(line, self.result_marker)
            if token:
                logger.info("Result token seen: %s=%s", self.result_marker, token)
        preview = preview_line(line)
        if preview:
            logger.debug("[worker pid=%s] %s", self.pid, preview)

    async def _pump_stdout(self, stream: asyncio.StreamReader) -> None:
        buffer = LineBuffer()
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            self._touch()
            for line in buffer.feed(chunk):
                self._stdout.append(line + "\n")
                self._handle_line(line)
        for line in buffer.flush():
            self._stdout.append(line)
            self._handle_line(line)

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            self._touch()
            self._stderr.append(decoder.decode(chunk))
        self._stderr.append(decoder.decode(b"", final=True))

    def _kill(self, proc: asyncio.subprocess.Process, reason: SessionState, detail: str) -> None:
        if self._stop_reason is not None:
            return
        self._stop_reason = reason
        self._stop_detail = detail
        with_suffix = f" ({detail})" if detail else ""
        logger.warning("Killing worker pid=%s: %s%s", self.pid, reason.value, with_suffix)
        try:
            proc.kill()
        except ProcessLookupError:
            pass

    async def _watchdog(self, proc: asyncio.subprocess.Process) -> None:
        while proc.returncode is None:
            await asyncio.sleep(self.check_interval)
            if proc.returncode is not None:
                return
            idle = time.monotonic() - self.last_output_at
            if idle > self.inactivity_timeout:
                last = time.strftime("%H:%M:%S", time.localtime(time.time() - idle))
                self._kill(
                    proc,
                    SessionState.TIMED_OUT,
                    f"no output for {idle:.0f}s (limit {self.inactivity_timeout:.0f}s), last activity at {last}",
                )
                return

    async def _poll_cancellation(self, proc: asyncio.subprocess.Process) -> None:
        while proc.returncode is None:
            await asyncio.sleep(self.cancel_poll_interval)
            if proc.returncode is not None:
                return
            self.cancel_checks += 1
            try:
                cancelled = await self.cancel_check()
            except Exception as exc:
                logger.warning("Cancellation check failed: %s", exc)
                continue
            if cancelled:
                self._kill(proc, SessionState.CANCELLED, "cancellation requested")
                return

    async def _feed_stdin(self, stdin: asyncio.StreamWriter, input_text: str) -> None:
        try:
            stdin.write(input_text.encode())
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("Worker closed stdin early: %s", exc)
        finally:
            stdin.close()

    async def _progress(self, proc: asyncio.subprocess.Process) -> None:
        while proc.returncode is None:
            await asyncio.sleep(self.progress_interval)
            if proc.returncode is not None:
                return
            elapsed = time.monotonic() - self.started_at
            idle = time.monotonic() - self.last_output_at
            logger.info(
                "Worker pid=%s still running (%.0fs elapsed, %.0fs since last output, %d lines)",
                self.pid, elapsed, idle, len(self._stdout),
            )

    async def run(self, input_text: str) -> SupervisorResult:
        self.started_at = time.monotonic()
        self._touch()
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
            )
        except OSError as exc:
            self.state = SessionState.FAILED
            error = f"Failed to spawn {self.command[0]}: {exc}"
            logger.error(error)
            return SupervisorResult(self.state, None, None, "", "", 0.0, error)

        self.pid = proc.pid
        self.state = SessionState.RUNNING
        logger.info("Spawned worker pid=%s (%s), prompt length %d", proc.pid, self.command[0], len(input_text))

        timers = [
            asyncio.create_task(self._watchdog(proc)),
            asyncio.create_task(self._progress(proc)),
        ]
        if self.cancel_check is not None:
            timers.append(asyncio.create_task(self._poll_cancellation(proc)))
        try:
            # Output must be drained while the prompt is still being written.
            await asyncio.gather(
                self._feed_stdin(proc.stdin, input_text),
                self._pump_stdout(proc.stdout),
                self._pump_stderr(proc.stderr),
            )
            exit_code = await proc.wait()
        finally:
            for task in timers:
                task.cancel()
            await asyncio.gather(*timers, return_exceptions=True)
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        return self._finish(exit_code)

    def _finish(self, exit_code: int) -> SupervisorResult:
        duration = time.monotonic() - self.started_at
        stdout = "".join(self._stdout)
        stderr = "".join(self._stderr)

        token = None
        error = None
        if self._stop_reason is not None:
            self.state = self._stop_reason
            if self._stop_reason is SessionState.TIMED_OUT:
                error = f"Worker timed out: {self._stop_detail}"
            else:
                error = "Worker cancelled on request"
        elif exit_code == 0:
            self.state = SessionState.SUCCEEDED
            token = extract_result_token(stdout, self.result_marker)
        else:
            self.state = SessionState.FAILED
            error = f"Worker failed with exit code {exit_code}\nStderr: {stderr.strip()[-2000:]}"

        log = logger.info if self.state is SessionState.SUCCEEDED else logger.error
        log(
            "Worker pid=%s finished: state=%s exit_code=%s duration=%.0fs token=%s",
            self.pid, self.state.value, exit_code, duration, token or "none",
        )
        return SupervisorResult(self.state, exit_code, token, stdout, stderr, duration, error)
