import asyncio
import json
import logging
from pathlib import Path
from typing import AsyncIterator, TextIO

from capbuilder.models import LogEvent, BuildStage

logger = logging.getLogger(__name__)

_CLOSED = object()


def format_sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


class EventStream:
    """One-way, append-only channel of build events.

    ``emit`` never blocks and never waits for the client; if nobody is reading
    (client went away) events simply pile up until the build ends.
    Once a terminal event (``result`` or ``error``) has been emitted every
    further event is dropped.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._terminated = False
        self._closed = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    def emit(self, event: dict) -> None:
        if self._terminated or self._closed:
            logger.debug("dropping event after terminal state: %s", event.get("type"))
            return
        if event.get("type") in ("result", "error"):
            self._terminated = True
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def events(self) -> AsyncIterator[dict]:
        while True:
            event = await self._queue.get()
            if event is _CLOSED:
                return
            yield event

    async def __aiter__(self) -> AsyncIterator[str]:
        async for event in self.events():
            yield format_sse(event)


class BuildLog:
    """Per-build logging context handed through the pipeline.

    Mirrors log events into ``build.log`` once a file is attached (the
    workspace must exist first). The file stays open until ``close()``.
    """

    def __init__(self, build_id: str, stream: EventStream) -> None:
        self.build_id = build_id
        self.stream = stream
        self.log_file: Path | None = None
        self.stage: BuildStage | None = None
        self._fh: TextIO | None = None

    def attach_file(self, path: Path) -> None:
        self.close()
        self.log_file = path
        try:
            self._fh = path.open("a", encoding="utf-8")
        except OSError as e:
            logger.warning("build %s: cannot open log file: %s", self.build_id, e)

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def log(self, message: str, type: str = "info") -> None:
        event = LogEvent(message=message, type=type)
        self.stream.emit({"type": "log", "log": event.to_dict()})
        if self._fh is not None:
            try:
                self._fh.write(f"[{event.timestamp}] [{type.upper()}] {message}\n")
                self._fh.flush()
            except OSError as e:
                logger.warning("build %s: cannot write log file: %s", self.build_id, e)
                self.close()

    def info(self, message: str) -> None:
        self.log(message, "info")

    def command(self, message: str) -> None:
        self.log(message, "command")

    def warning(self, message: str) -> None:
        self.log(message, "warning")

    def error(self, message: str) -> None:
        self.log(message, "error")

    def success(self, message: str) -> None:
        self.log(message, "success")

    def status(self, stage: BuildStage) -> None:
        self.stage = stage
        logger.info("build %s -> %s", self.build_id, stage.value)
        self.stream.emit({"type": "status", "status": stage.value, "progress": stage.progress})

    def result(
        self,
        success: bool,
        download_url: str | None = None,
        error: str | None = None,
        error_kind: str | None = None,
        stage: BuildStage | None = None,
    ) -> None:
        event: dict = {"type": "result", "success": success}
        if download_url:
            event["downloadUrl"] = download_url
        if error is not None:
            event["error"] = error
            event["errorKind"] = error_kind or "build"
            if stage is not None:
                event["stage"] = stage.value
        self.stream.emit(event)


def rejection(message: str) -> EventStream:
    """A stream carrying only a pre-flight ``error`` event."""
    stream = EventStream()
    stream.emit({"type": "error", "message": message})
    stream.close()
    return stream
