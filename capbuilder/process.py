import asyncio
import logging
import os
import signal
from enum import Enum
from pathlib import Path
from typing import Callable

from capbuilder.config import DEFAULT_TIMEOUT, RETRY_BACKOFF
from capbuilder.errors import CommandTimeoutError, ExitCodeError, ToolchainMissingError
from capbuilder.toolchain import Toolchain

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]

READ_CHUNK = 64 * 1024
# Minified bundles and Gradle classpaths can print megabyte-long lines
MAX_LINE_BYTES = 16 * 1024
TRUNCATED = b" [line truncated]"


class RetryClass(str, Enum):
    """Declared at the call site; only NETWORK commands are retried."""

    NONE = "none"
    NETWORK = "network"


def _emit(raw: bytes, on_line: LineCallback | None) -> None:
    line = raw.decode("utf-8", errors="replace").strip()
    if line and on_line:
        on_line(line)


async def _pump(stream: asyncio.StreamReader, on_line: LineCallback | None) -> None:
    """Split output into lines; anything past MAX_LINE_BYTES is cut off."""
    pending = b""
    skipping = False
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        pending += chunk
        lines = pending.split(b"\n")
        pending = lines.pop()
        for raw in lines:
            if skipping:
                # tail of an already truncated line
                skipping = False
                continue
            _emit(raw, on_line)
        if len(pending) > MAX_LINE_BYTES:
            if not skipping:
                _emit(pending[:MAX_LINE_BYTES] + TRUNCATED, on_line)
                skipping = True
            pending = b""
    if pending and not skipping:
        _emit(pending, on_line)


def _kill(process: asyncio.subprocess.Process) -> None:
    # Gradle and npm fork children; take the whole process group down
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    except OSError:
        process.kill()


async def _reap(process: asyncio.subprocess.Process) -> None:
    _kill(process)
    await process.wait()


async def run_once(
    command: str,
    args: list[str],
    cwd: Path,
    on_line: LineCallback | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    env: dict[str, str] | None = None,
) -> None:
    cwd.mkdir(parents=True, exist_ok=True)
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=str(cwd),
            env=full_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except FileNotFoundError:
        raise ToolchainMissingError(f"{command} is not installed or not on PATH")

    # stderr is forwarded as informational output: gradle and npm print
    # warnings there, only the exit code decides failure
    async def communicate() -> int:
        await asyncio.gather(_pump(process.stdout, on_line), _pump(process.stderr, on_line))
        return await process.wait()

    try:
        code = await asyncio.wait_for(communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _reap(process)
        raise CommandTimeoutError(command, timeout)
    except BaseException:
        # callback errors or cancellation must not leave the group running
        await _reap(process)
        raise

    if code != 0:
        raise ExitCodeError(command, code)


async def execute(
    command: str,
    args: list[str],
    cwd: Path,
    on_line: LineCallback | None = None,
    retries: int = 0,
    timeout: float = DEFAULT_TIMEOUT,
    retry_class: RetryClass = RetryClass.NONE,
    backoff: float = RETRY_BACKOFF,
    toolchain: Toolchain | None = None,
) -> None:
    """Run ``command args`` in ``cwd``, streaming each output line to ``on_line``.

    Raises ExitCodeError on a non-zero exit and CommandTimeoutError when the
    process outlives ``timeout`` seconds. NETWORK-class commands are retried
    ``retries`` times after ``backoff`` seconds.
    """
    env = (toolchain or Toolchain()).command_env()
    while True:
        try:
            await run_once(command, args, cwd, on_line=on_line, timeout=timeout, env=env)
            return
        except ExitCodeError as e:
            if retry_class is not RetryClass.NETWORK or retries <= 0:
                raise
            logger.warning("%s failed (code %s), retrying in %ss (%d left)", command, e.code, backoff, retries)
            if on_line:
                on_line(f"{command} failed with code {e.code}, retrying in {backoff:g}s...")
            retries -= 1
            await asyncio.sleep(backoff)
