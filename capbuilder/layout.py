"""Project layout detection and web-root assembly.

``detect`` is pure: it only looks at a set of relative POSIX paths, so tests
can feed it a virtual listing. ``detect_directory`` builds that listing from
disk (top level plus one level of subdirectories).
"""
import html
import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

MANIFEST = "package.json"
ENTRY_POINT = "index.html"
FRONTEND_DIRS = ("frontend", "client", "web")
OUTPUT_DIRS = ("dist", "build", "out", "docs", "www", "public")
STATIC_DIRS = ("public", "www", "static", "site", "docs", "src")

# Never copied into the web root
NON_WEB_DIRS = {
    "node_modules", ".git", ".github", ".idea", ".vscode", "android", "ios",
    "app-web", "__pycache__", ".next", ".nuxt", ".cache", "coverage",
}
NON_WEB_FILES = {"build.log", "package-lock.json", "yarn.lock", "pnpm-lock.yaml", "capacitor.config.json"}

# Dependencies that make installs/builds slow and Gradle hungry
HEAVY_DEPENDENCIES = (
    "three", "@tensorflow/tfjs", "firebase", "@angular/core", "phaser",
    "babylonjs", "@babylonjs/core", "monaco-editor", "pdfjs-dist", "@mui/material",
    "aws-amplify", "ffmpeg",
)


@dataclass(frozen=True)
class RootNodeProject:
    subpath: str = ""
    name: str = "root"


@dataclass(frozen=True)
class NestedFrontend:
    subpath: str
    name: str = "frontend"


@dataclass(frozen=True)
class StaticSite:
    subpath: str = ""
    name: str = "static"


LayoutStrategy = RootNodeProject | NestedFrontend | StaticSite


def detect(entries: Iterable[str]) -> LayoutStrategy:
    paths = {e.strip("/") for e in entries}
    if MANIFEST in paths:
        return RootNodeProject()
    for sub in FRONTEND_DIRS:
        if f"{sub}/{MANIFEST}" in paths:
            return NestedFrontend(sub)
    return StaticSite()


def list_entries(project_dir: Path) -> set[str]:
    entries = set()
    for item in project_dir.iterdir():
        entries.add(item.name)
        if item.is_dir() and item.name not in NON_WEB_DIRS:
            entries.update(f"{item.name}/{child.name}" for child in item.iterdir())
    return entries


def detect_directory(project_dir: Path) -> LayoutStrategy:
    return detect(list_entries(project_dir))


# --- PACKAGE MANIFEST ---


def read_manifest(node_dir: Path) -> dict:
    path = node_dir / MANIFEST
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("unreadable %s: %s", path, e)
        return {}


def has_build_script(manifest: dict) -> bool:
    return bool((manifest.get("scripts") or {}).get("build"))


def is_large_project(manifest: dict) -> bool:
    deps = {**(manifest.get("dependencies") or {}), **(manifest.get("devDependencies") or {})}
    return any(name in deps for name in HEAVY_DEPENDENCIES)


# --- WEB OUTPUT ---


def find_web_output(node_dir: Path) -> Path | None:
    """First conventional output dir holding an index.html (or a single
    nested app folder that does, as in ``dist/<app>/browser``)."""
    for name in OUTPUT_DIRS:
        candidate = node_dir / name
        if not candidate.is_dir():
            continue
        if (candidate / ENTRY_POINT).is_file():
            return candidate
        nested = sorted(p.parent for p in candidate.glob(f"*/{ENTRY_POINT}"))
        nested += sorted(p.parent for p in candidate.glob(f"*/*/{ENTRY_POINT}"))
        if nested:
            return nested[0]
    return None


def static_web_root(project_dir: Path) -> Path:
    if (project_dir / ENTRY_POINT).is_file():
        return project_dir
    for name in STATIC_DIRS:
        if (project_dir / name / ENTRY_POINT).is_file():
            return project_dir / name
    return project_dir


def _non_web_filter(root: Path):
    """copytree ignore hook; exclusions only apply at the top level, so
    nested asset folders like ``img/icons/android`` are kept."""
    root = Path(root).absolute()

    def ignore(directory: str, names: list[str]) -> set[str]:
        if Path(directory).absolute() != root:
            return set()
        return {n for n in names if n in NON_WEB_DIRS or n in NON_WEB_FILES}

    return ignore


def placeholder_page(html_files: list[str], title: str = "App") -> str:
    if len(html_files) == 1:
        target = html.escape(html_files[0], quote=True)
        return (
            "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\">"
            f"<meta http-equiv=\"refresh\" content=\"0; url={target}\">"
            f"<title>{html.escape(title)}</title></head>"
            f"<body><a href=\"{target}\">{target}</a></body></html>\n"
        )
    items = "\n".join(
        f"<li><a href=\"{html.escape(f, quote=True)}\">{html.escape(f)}</a></li>" for f in html_files
    )
    return (
        "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\">"
        "<meta name=\"viewport\" content=\"width=device-width, initial-scale=1\">"
        f"<title>{html.escape(title)}</title></head>\n<body><h1>{html.escape(title)}</h1>\n"
        f"<ul>\n{items}\n</ul></body></html>\n"
    )


def assemble_web_root(source: Path, target: Path, title: str = "App") -> bool:
    """Copy ``source`` into ``target``; returns True when a placeholder
    index.html had to be written."""
    if target.exists():
        shutil.rmtree(target)
    shutil.copytree(source, target, ignore=_non_web_filter(source))
    if (target / ENTRY_POINT).is_file():
        return False
    pages = sorted(p.relative_to(target).as_posix() for p in target.rglob("*.htm*"))
    (target / ENTRY_POINT).write_text(placeholder_page(pages, title), encoding="utf-8")
    return True
