import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from capbuilder.errors import ValidationError


class BuildStage(str, Enum):
    VERIFYING_ENVIRONMENT = "VERIFYING_ENVIRONMENT"
    CLONING = "CLONING"
    INSTALLING_ROOT = "INSTALLING_ROOT"
    INSTALLING_FRONTEND = "INSTALLING_FRONTEND"
    BUILDING_ROOT = "BUILDING_ROOT"
    BUILDING_FRONTEND = "BUILDING_FRONTEND"
    ASSEMBLING_WEB_ROOT = "ASSEMBLING_WEB_ROOT"
    SHELL_INIT = "SHELL_INIT"
    PLATFORM_ADD = "PLATFORM_ADD"
    APPLY_PATCHES = "APPLY_PATCHES"
    SHELL_SYNC = "SHELL_SYNC"
    ICON_APPLY = "ICON_APPLY"
    CLEAN = "CLEAN"
    COMPILE = "COMPILE"
    LOCATE_ARTIFACT = "LOCATE_ARTIFACT"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"

    @property
    def progress(self) -> int:
        return STAGE_PROGRESS[self]

    @property
    def terminal(self) -> bool:
        return self in (BuildStage.SUCCESS, BuildStage.ERROR)


STAGE_PROGRESS = {
    BuildStage.VERIFYING_ENVIRONMENT: 2,
    BuildStage.CLONING: 10,
    BuildStage.INSTALLING_ROOT: 25,
    BuildStage.INSTALLING_FRONTEND: 25,
    BuildStage.BUILDING_ROOT: 40,
    BuildStage.BUILDING_FRONTEND: 40,
    BuildStage.ASSEMBLING_WEB_ROOT: 50,
    BuildStage.SHELL_INIT: 58,
    BuildStage.PLATFORM_ADD: 65,
    BuildStage.APPLY_PATCHES: 70,
    BuildStage.SHELL_SYNC: 75,
    BuildStage.ICON_APPLY: 78,
    BuildStage.CLEAN: 80,
    BuildStage.COMPILE: 85,
    BuildStage.LOCATE_ARTIFACT: 97,
    BuildStage.SUCCESS: 100,
    BuildStage.ERROR: 100,
}

LOG_TYPES = ("info", "command", "error", "success", "warning")


@dataclass
class LogEvent:
    message: str
    type: str = "info"
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now().strftime("%H:%M:%S"))

    def to_dict(self) -> dict:
        return asdict(self)


# --- REQUEST ---

ORIENTATIONS = ("portrait", "landscape", "user")
BUILD_TYPES = ("debug", "release")
OUTPUT_FORMATS = {"package": "package", "apk": "package", "bundle": "bundle", "aab": "bundle"}

PACKAGE_ID_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*(\.[a-zA-Z][a-zA-Z0-9_]*)+$")
HEX_COLOR_RE = re.compile(r"^#(?:[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")
REPO_URL_RE = re.compile(r"^(?:https?://[^\s/]+/\S+|git@[^\s:]+:\S+)$")


def generate_package_id(app_name: str) -> str:
    """``"My Cool App!"`` -> ``com.mycoolapp.app``"""
    slug = re.sub(r"[^a-z0-9]", "", app_name.lower())[:20]
    if slug and slug[0].isdigit():
        slug = "app" + slug
    return f"com.{slug or 'myapp'}.app"


def safe_name(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip()).strip("._-")
    return cleaned or "app"


def _value(data: Mapping[str, Any], key: str, default: Any) -> Any:
    # JSON null and empty form fields mean "not given"
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    return value


def _as_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "1", "yes", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "0", "no", "off", ""):
        return False
    raise ValidationError(f"Invalid boolean for {key}: {value!r}")


def _as_int(value: Any, key: str, minimum: int = 1) -> int:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid integer for {key}: {value!r}")
    if number < minimum:
        raise ValidationError(f"{key} must be >= {minimum}")
    return number


def _choice(value: Any, key: str, choices) -> str:
    normalized = str(value).strip().lower()
    if normalized not in choices:
        raise ValidationError(f"Invalid {key}: {value!r} (expected one of {', '.join(choices)})")
    return normalized


@dataclass(frozen=True)
class BuildRequest:
    repo_url: str
    app_name: str = "My App"
    app_id: str = ""
    orientation: str = "user"
    fullscreen: bool = False
    icon: str | None = None
    version_code: int = 1
    version_name: str = "1.0"
    build_type: str = "debug"
    output_format: str = "package"
    min_sdk: int = 22
    target_sdk: int = 34
    minify: bool = True
    permissions: Mapping[str, bool] = field(default_factory=lambda: MappingProxyType({}))
    splash_color: str = "#FFFFFF"
    splash_duration: int = 2000
    splash_image: str | None = None

    @property
    def is_release(self) -> bool:
        return self.build_type == "release"

    @property
    def is_bundle(self) -> bool:
        return self.output_format == "bundle"

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "BuildRequest":
        """Validates a camelCase JSON payload (or form/query fields)."""
        repo_url = str(data.get("repoUrl") or "").strip()
        if not repo_url:
            raise ValidationError("No Repository URL provided")
        if not REPO_URL_RE.match(repo_url):
            raise ValidationError(f"Invalid repository URL: {repo_url}")

        app_name = str(data.get("appName") or "My App").strip() or "My App"
        app_id = str(data.get("appId") or data.get("packageId") or "").strip()
        if not app_id:
            app_id = generate_package_id(app_name)
        if not PACKAGE_ID_RE.match(app_id):
            raise ValidationError(f"Invalid package identifier: {app_id}")

        min_sdk = _as_int(_value(data, "minSdk", 22), "minSdk")
        target_sdk = _as_int(_value(data, "targetSdk", 34), "targetSdk")
        if target_sdk < min_sdk:
            raise ValidationError("targetSdk must not be lower than minSdk")

        output_format = _choice(data.get("outputFormat") or "package", "outputFormat", OUTPUT_FORMATS)

        splash_color = str(data.get("splashColor") or "#FFFFFF").strip()
        if not HEX_COLOR_RE.match(splash_color):
            raise ValidationError(f"Invalid splashColor: {splash_color}")

        raw_permissions = data.get("permissions") or {}
        if not isinstance(raw_permissions, Mapping):
            raise ValidationError("permissions must be an object")
        permissions = {
            str(name).upper(): _as_bool(enabled, f"permissions.{name}")
            for name, enabled in raw_permissions.items()
        }

        return cls(
            repo_url=repo_url,
            app_name=app_name,
            app_id=app_id,
            orientation=_choice(data.get("orientation") or "user", "orientation", ORIENTATIONS),
            fullscreen=_as_bool(_value(data, "fullscreen", False), "fullscreen"),
            icon=(str(data["icon"]).strip() or None) if data.get("icon") else None,
            version_code=_as_int(_value(data, "versionCode", 1), "versionCode"),
            version_name=str(data.get("versionName") or "1.0").strip(),
            build_type=_choice(data.get("buildType") or "debug", "buildType", BUILD_TYPES),
            output_format=OUTPUT_FORMATS[output_format],
            min_sdk=min_sdk,
            target_sdk=target_sdk,
            minify=_as_bool(_value(data, "minify", True), "minify"),
            permissions=MappingProxyType(permissions),
            splash_color=splash_color,
            splash_duration=_as_int(_value(data, "splashDuration", 2000), "splashDuration", minimum=0),
            splash_image=(str(data["splashImage"]).strip() or None) if data.get("splashImage") else None,
        )
