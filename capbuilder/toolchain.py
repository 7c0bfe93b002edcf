import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from capbuilder.config import LIB_DIR

# Paths written by `capbuilder-setup` (see bootstrap.py)
BUNDLED_JAVA_HOME = LIB_DIR / "jvm" / "jdk-17.0.2"
BUNDLED_ANDROID_HOME = LIB_DIR / "android-sdk"

JAVA_CANDIDATES = [
    BUNDLED_JAVA_HOME,
    Path("/usr/lib/jvm/java-17-openjdk-amd64"),
    Path("/usr/lib/jvm/java-17-openjdk"),
    Path("/usr/lib/jvm/temurin-17-jdk-amd64"),
    Path("/opt/java/openjdk"),
]
ANDROID_CANDIDATES = [
    BUNDLED_ANDROID_HOME,
    Path.home() / "Android" / "Sdk",
    Path("/opt/android-sdk"),
    Path("/usr/lib/android-sdk"),
]

REQUIRED_TOOLS = ("git", "node", "npm")
OPTIONAL_TOOLS = ("java",)

# Non-interactive markers for every spawned tool
NON_INTERACTIVE_ENV = {
    "CI": "true",
    "GIT_TERMINAL_PROMPT": "0",
    "NPM_CONFIG_FUND": "false",
    "NPM_CONFIG_AUDIT": "false",
    "NPM_CONFIG_UPDATE_NOTIFIER": "false",
    "NPM_CONFIG_YES": "true",
    "CAPACITOR_TELEMETRY": "false",
    "GRADLE_OPTS": "-Dorg.gradle.console=plain -Dorg.gradle.daemon=false",
}


def _first_existing(candidates: list[Path]) -> Path | None:
    return next((p for p in candidates if p.exists()), None)


def resolve_java_home() -> Path | None:
    if os.getenv("JAVA_HOME"):
        return Path(os.environ["JAVA_HOME"])
    return _first_existing(JAVA_CANDIDATES)


def resolve_android_home() -> Path | None:
    for var in ("ANDROID_HOME", "ANDROID_SDK_ROOT"):
        if os.getenv(var):
            return Path(os.environ[var])
    return _first_existing(ANDROID_CANDIDATES)


@dataclass
class ToolchainReport:
    missing_required: list[str] = field(default_factory=list)
    missing_optional: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing_required


class Toolchain:
    """Locates the JDK / Android SDK and the CLI tools a build needs."""

    def __init__(
        self,
        java_home: Path | None = None,
        android_home: Path | None = None,
        which: Callable[..., str | None] = shutil.which,
    ):
        self.java_home = java_home if java_home is not None else resolve_java_home()
        self.android_home = android_home if android_home is not None else resolve_android_home()
        self._which = which

    def search_path(self) -> str:
        extra = []
        if self.java_home:
            extra.append(str(self.java_home / "bin"))
        if self.android_home:
            extra.append(str(self.android_home / "platform-tools"))
            extra.append(str(self.android_home / "cmdline-tools" / "latest" / "bin"))
        return os.pathsep.join(extra + [os.environ.get("PATH", "")])

    def command_env(self) -> dict[str, str]:
        env = dict(NON_INTERACTIVE_ENV)
        env["PATH"] = self.search_path()
        if self.java_home:
            env["JAVA_HOME"] = str(self.java_home)
        if self.android_home:
            env["ANDROID_HOME"] = str(self.android_home)
            env["ANDROID_SDK_ROOT"] = str(self.android_home)
        return env

    def which(self, tool: str) -> str | None:
        return self._which(tool, path=self.search_path())

    def verify(self) -> ToolchainReport:
        report = ToolchainReport()
        for tool in REQUIRED_TOOLS:
            if not self.which(tool):
                report.missing_required.append(tool)
        for tool in OPTIONAL_TOOLS:
            if not self.which(tool):
                report.missing_optional.append(tool)
        if not self.android_home or not self.android_home.exists():
            report.missing_optional.append("android-sdk")
        return report
