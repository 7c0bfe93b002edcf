import base64
import binascii
import logging
import shutil
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)

DENSITIES = ("mdpi", "hdpi", "xhdpi", "xxhdpi", "xxxhdpi")
ICON_FILES = ("ic_launcher.png", "ic_launcher_round.png", "ic_launcher_foreground.png")
ADAPTIVE_ICON_DIR = "mipmap-anydpi-v26"
DOWNLOAD_TIMEOUT = 30.0
MAX_IMAGE_BYTES = 10 * 1024 * 1024


class ImageSourceError(ValueError):
    pass


def decode_inline(payload: str) -> bytes:
    """Accepts a ``data:image/...;base64,`` URI or bare base64."""
    if payload.startswith("data:"):
        header, _, payload = payload.partition(",")
        if ";base64" not in header:
            raise ImageSourceError("only base64 data URIs are supported")
    try:
        return base64.b64decode(payload.strip(), validate=True)
    except (binascii.Error, ValueError):
        raise ImageSourceError("image payload is not valid base64")


async def load_image(source: str, client: httpx.AsyncClient | None = None) -> bytes:
    if source.startswith(("http://", "https://")):
        owns_client = client is None
        client = client or httpx.AsyncClient(follow_redirects=True, timeout=DOWNLOAD_TIMEOUT)
        try:
            response = await client.get(source)
            response.raise_for_status()
            data = response.content
        finally:
            if owns_client:
                await client.aclose()
    else:
        data = decode_inline(source)
    if not data:
        raise ImageSourceError("image is empty")
    if len(data) > MAX_IMAGE_BYTES:
        raise ImageSourceError("image is larger than 10MB")
    return data


def replace_icons(res_dir: Path, image: bytes) -> int:
    """Drop the adaptive (vector) icon and write ``image`` into every
    density's launcher slots. Returns the number of files written."""
    adaptive = res_dir / ADAPTIVE_ICON_DIR
    if adaptive.exists():
        shutil.rmtree(adaptive)

    targets = sorted(
        d for d in res_dir.glob("mipmap-*") if d.is_dir() and d.name.removeprefix("mipmap-") in DENSITIES
    )
    if not targets:
        targets = [res_dir / f"mipmap-{density}" for density in DENSITIES]

    written = 0
    for directory in targets:
        directory.mkdir(parents=True, exist_ok=True)
        for name in ICON_FILES:
            # Launcher expects .png; drop any .webp variant so names don't clash
            stale = directory / name.replace(".png", ".webp")
            if stale.exists():
                stale.unlink()
            (directory / name).write_bytes(image)
            written += 1
    logger.info("icons written: %d files in %d densities", written, len(targets))
    return written


def replace_splash(res_dir: Path, image: bytes) -> int:
    targets = sorted(res_dir.glob("drawable*/splash.png"))
    if not targets:
        targets = [res_dir / "drawable" / "splash.png"]
    for target in targets:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(image)
    return len(targets)
