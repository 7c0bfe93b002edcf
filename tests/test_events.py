import json

from capbuilder.events import BuildLog, EventStream, format_sse, rejection
from capbuilder.models import BuildStage
from conftest import drain


def test_sse_framing():
    assert format_sse({"type": "status", "status": "CLONING"}) == 'data: {"type": "status", "status": "CLONING"}\n\n'


async def test_events_after_result_are_dropped():
    stream = EventStream()
    log = BuildLog("b1", stream)
    log.status(BuildStage.CLONING)
    log.result(False, error="boom", error_kind="exit_code", stage=BuildStage.CLONING)
    log.info("too late")
    log.result(True, download_url="http://x/y.apk")
    stream.close()

    events = await drain(stream)
    assert [e["type"] for e in events] == ["status", "result"]
    assert events[1] == {
        "type": "result", "success": False, "error": "boom", "errorKind": "exit_code", "stage": "CLONING",
    }
    assert stream.terminated


async def test_successful_result_shape():
    stream = EventStream()
    BuildLog("b1", stream).result(True, download_url="http://host/downloads/a.apk")
    stream.close()
    assert await drain(stream) == [{"type": "result", "success": True, "downloadUrl": "http://host/downloads/a.apk"}]


async def test_status_carries_progress():
    stream = EventStream()
    BuildLog("b1", stream).status(BuildStage.COMPILE)
    stream.close()
    assert await drain(stream) == [{"type": "status", "status": "COMPILE", "progress": 85}]


async def test_log_mirrored_to_file_once_attached(tmp_path):
    stream = EventStream()
    log = BuildLog("b1", stream)
    log.info("before the workspace exists")
    log.attach_file(tmp_path / "build.log")
    log.command("$ npm install")
    log.warning("peer dependency")
    stream.close()
    log.close()

    lines = (tmp_path / "build.log").read_text().splitlines()
    assert len(lines) == 2
    assert lines[0].endswith("[COMMAND] $ npm install")
    assert lines[1].endswith("[WARNING] peer dependency")

    events = await drain(stream)
    assert [e["log"]["type"] for e in events] == ["info", "command", "warning"]
    assert all(e["log"]["id"] and e["log"]["timestamp"] for e in events)


async def test_rejection_stream_frames():
    frames = [frame async for frame in rejection("No Repository URL provided")]
    assert len(frames) == 1
    assert json.loads(frames[0].removeprefix("data: ")) == {"type": "error", "message": "No Repository URL provided"}


async def test_log_file_stays_open_until_closed(tmp_path):
    stream = EventStream()
    log = BuildLog("b1", stream)
    log.attach_file(tmp_path / "build.log")
    log.info("first")
    log.info("second")
    # flushed per line, readable while the build is still running
    assert (tmp_path / "build.log").read_text().count("[INFO]") == 2

    log.close()
    log.info("after close")
    stream.close()

    assert "after close" not in (tmp_path / "build.log").read_text()
    assert len(await drain(stream)) == 3
