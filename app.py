# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "httpx",
#     "litestar",
#     "python-multipart",
#     "uvicorn",
# ]
# ///

import asyncio
import base64
import json
import logging
import uuid
from contextlib import asynccontextmanager, suppress
from typing import Annotated, Any, AsyncGenerator, Mapping

from litestar import Litestar, MediaType, Request, get, post
from litestar.config.cors import CORSConfig
from litestar.datastructures import UploadFile
from litestar.enums import RequestEncodingType
from litestar.params import Body
from litestar.response import Stream
from litestar.static_files import create_static_files_router

from capbuilder import __version__
from capbuilder.config import HOST, PORT, PUBLIC_DIR, PUBLIC_URL, ensure_dirs
from capbuilder.errors import ValidationError
from capbuilder.events import BuildLog, EventStream, rejection
from capbuilder.models import BuildRequest
from capbuilder.pipeline import BuildPipeline
from capbuilder.workspace import WorkspaceManager

logger = logging.getLogger("capbuilder.app")

ensure_dirs()

BANNER = f"capbuilder {__version__}: APK build server is running"
SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}

WORKSPACES = WorkspaceManager()

# Pipelines run detached from the HTTP response; keep references until done
running_builds: set[asyncio.Task] = set()

# --- HELPERS ---


def public_base_url(request: Request) -> str:
    if PUBLIC_URL:
        return PUBLIC_URL.rstrip("/")
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    return f"{proto.split(',')[0].strip()}://{host.split(',')[0].strip()}"


def event_response(stream: EventStream) -> Stream:
    return Stream(stream, media_type="text/event-stream", headers=SSE_HEADERS)


def coerce_fields(payload: Mapping[str, Any]) -> dict:
    """Query strings and forms carry everything as text; permissions may be
    JSON (``{"CAMERA": true}``) or a comma list (``CAMERA,LOCATION``)."""
    fields = dict(payload)
    permissions = fields.get("permissions")
    if isinstance(permissions, str):
        try:
            fields["permissions"] = json.loads(permissions)
        except ValueError:
            fields["permissions"] = {p.strip(): True for p in permissions.split(",") if p.strip()}
    return fields


def start_build(payload: Mapping[str, Any], request: Request) -> Stream:
    try:
        build_request = BuildRequest.from_payload(payload)
    except ValidationError as e:
        logger.info("build request rejected: %s", e.message)
        return event_response(rejection(e.message))

    build_id = str(uuid.uuid4())
    stream = EventStream()
    pipeline = BuildPipeline(
        build_request,
        build_id,
        BuildLog(build_id, stream),
        workspaces=WORKSPACES,
        public_dir=PUBLIC_DIR,
        base_url=public_base_url(request),
    )
    logger.info("build %s accepted for %s", build_id, build_request.repo_url)
    task = asyncio.create_task(pipeline.run())
    running_builds.add(task)
    task.add_done_callback(running_builds.discard)
    return event_response(stream)


# --- ROUTES ---


@get("/", media_type=MediaType.TEXT)
async def liveness() -> str:
    return BANNER


@post("/api/build", status_code=200)
async def build_from_json(data: dict[str, Any], request: Request) -> Stream:
    return start_build(data, request)


@get("/api/build/stream")
async def build_from_query(request: Request) -> Stream:
    return start_build(coerce_fields(dict(request.query_params.items())), request)


@post("/api/build/upload", status_code=200)
async def build_from_form(
    data: Annotated[dict, Body(media_type=RequestEncodingType.MULTI_PART)],
    request: Request,
) -> Stream:
    payload: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, UploadFile):
            content = await value.read()
            if content:
                encoded = base64.b64encode(content).decode("ascii")
                payload[key] = f"data:{value.content_type or 'image/png'};base64,{encoded}"
        else:
            payload[key] = value
    return start_build(coerce_fields(payload), request)


# --- RUN ---


@asynccontextmanager
async def workspace_sweeper(app: Litestar) -> AsyncGenerator[None, None]:
    task = asyncio.create_task(WORKSPACES.run_sweeper())
    try:
        yield
    finally:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


cors = CORSConfig(allow_origins=["*"])
app = Litestar(
    route_handlers=[
        liveness,
        build_from_json,
        build_from_query,
        build_from_form,
        create_static_files_router(path="/download", directories=[PUBLIC_DIR]),
    ],
    cors_config=cors,
    lifespan=[workspace_sweeper],
)


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logger.info("workspace: %s", WORKSPACES.base_dir)
    print(f"[BACKEND] http://{HOST}:{PORT}")
    uvicorn.run(app, host=HOST, port=PORT, log_level="info")


if __name__ == "__main__":
    main()
