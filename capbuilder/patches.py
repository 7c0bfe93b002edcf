"""Idempotent text patches for the files Capacitor generates.

Every patch exposes ``applies(content)`` and ``apply(content)``; applying a
patch to its own output is a no-op, so ``patch_file`` can be re-run safely.
"""
import json
import logging
import re
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)


class Patch:
    name = "patch"

    def applies(self, content: str) -> bool:
        return self.apply(content) != content

    def apply(self, content: str) -> str:
        raise NotImplementedError


def patch_file(path: Path, patch: Patch) -> bool:
    """Returns True when the file was changed."""
    content = path.read_text(encoding="utf-8")
    if not patch.applies(content):
        logger.debug("%s: %s already applied", path.name, patch.name)
        return False
    path.write_text(patch.apply(content), encoding="utf-8")
    logger.debug("%s: applied %s", path.name, patch.name)
    return True


# --- HELPERS ---


def _block_end(content: str, open_brace: int) -> int:
    """Index of the ``}`` matching the ``{`` at ``open_brace``."""
    depth = 0
    for i in range(open_brace, len(content)):
        if content[i] == "{":
            depth += 1
        elif content[i] == "}":
            depth -= 1
            if depth == 0:
                return i
    return len(content)


def _find_block(content: str, header: str, start: int = 0, end: int | None = None) -> tuple[int, int] | None:
    """(open, close) brace positions of the first ``header {`` block."""
    match = re.compile(rf"\b{header}\s*\{{").search(content, start, len(content) if end is None else end)
    if not match:
        return None
    open_brace = match.end() - 1
    return open_brace, _block_end(content, open_brace)


def _insert_after_open(content: str, header: str, snippet: str) -> str:
    span = _find_block(content, header)
    if span is None:
        return content
    return content[: span[0] + 1] + "\n" + snippet.rstrip("\n") + content[span[0] + 1 :]


def _indent_of_line(content: str, pos: int) -> str:
    line_start = content.rfind("\n", 0, pos) + 1
    line = content[line_start:pos]
    return line[: len(line) - len(line.lstrip())]


# 1. Version
class VersionPatch(Patch):
    name = "version"

    def __init__(self, code: int, version_name: str):
        self.code = int(code)
        self.version_name = re.sub(r'["\\\n]', "", version_name)

    def _set(self, content: str, key: str, value: str) -> str:
        pattern = re.compile(rf"^([ \t]*){key}[ \t]+.*$", re.MULTILINE)
        if pattern.search(content):
            return pattern.sub(lambda m: f"{m.group(1)}{key} {value}", content, count=1)
        span = _find_block(content, "defaultConfig")
        if span is None:
            return content
        indent = _indent_of_line(content, span[0]) + "    "
        return content[: span[0] + 1] + f"\n{indent}{key} {value}" + content[span[0] + 1 :]

    def apply(self, content: str) -> str:
        content = self._set(content, "versionCode", str(self.code))
        return self._set(content, "versionName", f'"{self.version_name}"')


# 2. Orientation
MAIN_ACTIVITY_RE = re.compile(r"<activity\b[^>]*android:name=\"[^\"]*MainActivity\"[^>]*>", re.DOTALL)


class OrientationPatch(Patch):
    name = "orientation"

    def __init__(self, orientation: str):
        self.orientation = orientation

    def applies(self, content: str) -> bool:
        if self.orientation in ("user", "auto", ""):
            return False
        match = MAIN_ACTIVITY_RE.search(content)
        return bool(match) and "android:screenOrientation" not in match.group(0)

    def apply(self, content: str) -> str:
        if not self.applies(content):
            return content
        match = MAIN_ACTIVITY_RE.search(content)
        tag = match.group(0).replace(
            "<activity", f'<activity\n            android:screenOrientation="{self.orientation}"', 1
        )
        return content[: match.start()] + tag + content[match.end() :]


# 3. Theme
THEME_BLOCK_RE = re.compile(r'[ \t]*<style name="AppTheme\.NoActionBar"[^>]*>.*?</style>', re.DOTALL)
FULLSCREEN_ITEM = '<item name="android:windowFullscreen">true</item>'

FULLSCREEN_ITEMS = [
    FULLSCREEN_ITEM,
    '<item name="android:windowLayoutInDisplayCutoutMode">shortEdges</item>',
    '<item name="android:windowTranslucentNavigation">true</item>',
]
STATUS_BAR_ITEMS = [
    '<item name="android:windowDrawsSystemBarBackgrounds">true</item>',
    '<item name="android:windowTranslucentStatus">false</item>',
    '<item name="android:statusBarColor">@android:color/black</item>',
]


class ThemePatch(Patch):
    name = "theme"
    parent = "Theme.AppCompat.Light.NoActionBar"

    def __init__(self, fullscreen: bool):
        self.fullscreen = fullscreen

    def block(self) -> str:
        items = [
            '<item name="windowActionBar">false</item>',
            '<item name="windowNoTitle">true</item>',
            '<item name="android:background">@null</item>',
        ]
        items += FULLSCREEN_ITEMS if self.fullscreen else STATUS_BAR_ITEMS
        body = "\n".join(f"        {item}" for item in items)
        return f'    <style name="AppTheme.NoActionBar" parent="{self.parent}">\n{body}\n    </style>'

    def apply(self, content: str) -> str:
        block = self.block()
        if THEME_BLOCK_RE.search(content):
            return THEME_BLOCK_RE.sub(lambda _: block, content, count=1)
        if "</resources>" in content:
            return content.replace("</resources>", f"{block}\n</resources>", 1)
        return content


# 4. Dependency resolution pins
RESOLUTION_SENTINEL = "// capbuilder: kotlin-stdlib resolution"
KOTLIN_VERSION = "1.8.22"
PINNED_MODULES = (
    "org.jetbrains.kotlin:kotlin-stdlib",
    "org.jetbrains.kotlin:kotlin-stdlib-jdk7",
    "org.jetbrains.kotlin:kotlin-stdlib-jdk8",
)


class ResolutionPinPatch(Patch):
    name = "resolution-pins"

    def __init__(self, scope: str = "module"):
        self.scope = scope

    def applies(self, content: str) -> bool:
        return RESOLUTION_SENTINEL not in content

    def snippet(self) -> str:
        forces = "\n".join(f'        force "{m}:{KOTLIN_VERSION}"' for m in PINNED_MODULES)
        block = f"configurations.all {{\n    resolutionStrategy {{\n{forces}\n    }}\n}}"
        if self.scope == "root":
            inner = "\n".join(f"    {line}" for line in block.splitlines())
            block = f"allprojects {{\n{inner}\n}}"
        return f"\n{RESOLUTION_SENTINEL}\n{block}\n"

    def apply(self, content: str) -> str:
        if not self.applies(content):
            return content
        return content.rstrip("\n") + "\n" + self.snippet()


# 5. Native library packaging
PACKAGING_SENTINEL = "// capbuilder: packaging rules"
PICK_FIRST = ("lib/*/libc++_shared.so", "lib/*/libjsc.so", "lib/*/libfbjni.so", "lib/*/libcrypto.so")
EXCLUDES = ("META-INF/DEPENDENCIES", "META-INF/LICENSE", "META-INF/NOTICE", "META-INF/*.kotlin_module")


class PackagingPatch(Patch):
    name = "packaging"

    def applies(self, content: str) -> bool:
        return PACKAGING_SENTINEL not in content and _find_block(content, "android") is not None

    def apply(self, content: str) -> str:
        if not self.applies(content):
            return content
        rules = [f"        pickFirst '{p}'" for p in PICK_FIRST] + [f"        exclude '{e}'" for e in EXCLUDES]
        snippet = f"    {PACKAGING_SENTINEL}\n    packagingOptions {{\n" + "\n".join(rules) + "\n    }"
        return _insert_after_open(content, "android", snippet)


# 6. gradle.properties
BASE_JVM_ARGS = "-Xmx2048m -Dfile.encoding=UTF-8"
LARGE_JVM_ARGS = "-Xmx4096m -XX:MaxMetaspaceSize=1024m -Dfile.encoding=UTF-8"


class GradlePropertiesPatch(Patch):
    name = "gradle-properties"

    def __init__(self, large: bool = False):
        self.properties = {
            "org.gradle.jvmargs": LARGE_JVM_ARGS if large else BASE_JVM_ARGS,
            "org.gradle.daemon": "false",
            "org.gradle.caching": "true",
            "android.useAndroidX": "true",
            "android.enableJetifier": "true",
        }

    def apply(self, content: str) -> str:
        lines = content.splitlines()
        seen = set()
        for i, line in enumerate(lines):
            key = line.split("=", 1)[0].strip()
            if key in self.properties and not line.lstrip().startswith("#"):
                lines[i] = f"{key}={self.properties[key]}"
                seen.add(key)
        lines += [f"{k}={v}" for k, v in self.properties.items() if k not in seen]
        return "\n".join(lines) + "\n"


# 7. Permissions
PERMISSION_MAP = {
    "INTERNET": ("android.permission.INTERNET",),
    "CAMERA": ("android.permission.CAMERA",),
    "LOCATION": ("android.permission.ACCESS_FINE_LOCATION", "android.permission.ACCESS_COARSE_LOCATION"),
    "MICROPHONE": ("android.permission.RECORD_AUDIO",),
    "VIBRATE": ("android.permission.VIBRATE",),
    "NOTIFICATIONS": ("android.permission.POST_NOTIFICATIONS",),
}
PERMISSION_ALIASES = {
    "NETWORK": "INTERNET",
    "GEOLOCATION": "LOCATION",
    "AUDIO": "MICROPHONE",
    "RECORD_AUDIO": "MICROPHONE",
    "VIBRATION": "VIBRATE",
    "PUSH": "NOTIFICATIONS",
    "POST_NOTIFICATIONS": "NOTIFICATIONS",
}


def android_permissions(flags: Mapping[str, bool]) -> list[str]:
    """Platform permissions for the enabled capability flags; INTERNET always."""
    wanted = ["INTERNET"]
    for name, enabled in flags.items():
        key = PERMISSION_ALIASES.get(name.upper(), name.upper())
        if enabled and key in PERMISSION_MAP and key not in wanted:
            wanted.append(key)
        elif key not in PERMISSION_MAP:
            logger.warning("unknown permission flag ignored: %s", name)
    return [perm for key in wanted for perm in PERMISSION_MAP[key]]


class PermissionPatch(Patch):
    name = "permissions"

    def __init__(self, flags: Mapping[str, bool]):
        self.permissions = android_permissions(flags)

    def missing(self, content: str) -> list[str]:
        return [p for p in self.permissions if f'android:name="{p}"' not in content]

    def applies(self, content: str) -> bool:
        return "<application" in content and bool(self.missing(content))

    def apply(self, content: str) -> str:
        if not self.applies(content):
            return content
        pos = content.index("<application")
        indent = _indent_of_line(content, pos)
        lines = "".join(f'<uses-permission android:name="{p}" />\n{indent}' for p in self.missing(content))
        return content[:pos] + lines + content[pos:]


# 9. Capacitor JSON config (splash screen, app identity)
def _deep_merge(base: dict, extra: Mapping) -> dict:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class JsonMergePatch(Patch):
    name = "json-merge"

    def __init__(self, values: Mapping):
        self.values = values

    def apply(self, content: str) -> str:
        data = json.loads(content) if content.strip() else {}
        return json.dumps(_deep_merge(data, self.values), indent=2) + "\n"


class SplashConfigPatch(JsonMergePatch):
    name = "splash"

    def __init__(self, color: str, duration: int, scale_type: str = "CENTER_CROP"):
        super().__init__(
            {
                "plugins": {
                    "SplashScreen": {
                        "launchShowDuration": int(duration),
                        "launchAutoHide": True,
                        "backgroundColor": color,
                        "androidScaleType": scale_type,
                        "showSpinner": False,
                    }
                }
            }
        )


# 10. Code shrinking
class MinifyPatch(Patch):
    name = "minify"

    def _release_span(self, content: str) -> tuple[int, int] | None:
        build_types = _find_block(content, "buildTypes")
        if build_types is None:
            return None
        return _find_block(content, "release", build_types[0], build_types[1])

    def apply(self, content: str) -> str:
        span = self._release_span(content)
        if span is None:
            snippet = (
                "    buildTypes {\n        release {\n            minifyEnabled true\n"
                "            shrinkResources true\n"
                "            proguardFiles getDefaultProguardFile('proguard-android.txt'), 'proguard-rules.pro'\n"
                "        }\n    }"
            )
            return _insert_after_open(content, "android", snippet)
        start, end = span
        body = content[start:end]
        if re.search(r"minifyEnabled\s+true", body) and "shrinkResources" in body:
            return content
        indent = _indent_of_line(content, start) + "    "
        body = re.sub(r"\n[ \t]*minifyEnabled\s+\w+", "", body)
        body = re.sub(r"\n[ \t]*shrinkResources\s+\w+", "", body)
        body = "{" + f"\n{indent}minifyEnabled true\n{indent}shrinkResources true" + body[1:]
        return content[:start] + body + content[end:]


# 11. Strict-mode relaxation
CHAINED_TYPECHECK_RE = re.compile(r"\b(?:vue-tsc|tsc)\b[^&|;]*&&\s*")
STRICT_OPTIONS_RE = re.compile(r'("(?:noUnusedLocals|noUnusedParameters|noEmitOnError)"\s*:\s*)true')


class BuildScriptPatch(Patch):
    """Drops a chained ``tsc &&`` from the build script so type errors
    don't stop the asset build."""

    name = "build-script"

    def applies(self, content: str) -> bool:
        script = ((json.loads(content).get("scripts") or {}).get("build")) or ""
        return bool(CHAINED_TYPECHECK_RE.search(script))

    def apply(self, content: str) -> str:
        if not self.applies(content):
            return content
        data = json.loads(content)
        data["scripts"]["build"] = CHAINED_TYPECHECK_RE.sub("", data["scripts"]["build"]).strip()
        return json.dumps(data, indent=2) + "\n"


class TsconfigPatch(Patch):
    name = "tsconfig"

    def apply(self, content: str) -> str:
        return STRICT_OPTIONS_RE.sub(r"\1false", content)


# --- SUPPLEMENTARY ---


class SdkLevelPatch(Patch):
    """Literal SDK levels in ``variables.gradle`` (``key = n``) or in
    ``app/build.gradle`` (``key n``)."""

    name = "sdk-levels"

    def __init__(self, min_sdk: int, target_sdk: int):
        self.levels = {"minSdkVersion": int(min_sdk), "targetSdkVersion": int(target_sdk)}

    def apply(self, content: str) -> str:
        for key, value in self.levels.items():
            content = re.sub(rf"(\b{key}\s*=?\s*)\d+", rf"\g<1>{value}", content)
        target = self.levels["targetSdkVersion"]

        def bump(match: re.Match) -> str:
            return f"{match.group(1)}{max(int(match.group(2)), target)}"

        return re.sub(r"(\bcompileSdkVersion\s*=?\s*)(\d+)", bump, content)


class SigningPatch(Patch):
    name = "signing"

    def __init__(self, keystore: str, alias: str, password: str):
        self.keystore, self.alias, self.password = keystore, alias, password

    def apply(self, content: str) -> str:
        if not re.search(r"\bsigningConfigs\s*\{", content):
            snippet = (
                "    signingConfigs {\n        release {\n"
                f'            storeFile file("{self.keystore}")\n'
                f'            storePassword "{self.password}"\n'
                f'            keyAlias "{self.alias}"\n'
                f'            keyPassword "{self.password}"\n'
                "        }\n    }"
            )
            content = _insert_after_open(content, "android", snippet)
        build_types = _find_block(content, "buildTypes")
        if build_types is None:
            return content
        release = _find_block(content, "release", build_types[0], build_types[1])
        if release is None or "signingConfig signingConfigs.release" in content[release[0] : release[1]]:
            return content
        indent = _indent_of_line(content, release[0]) + "    "
        return content[: release[0] + 1] + f"\n{indent}signingConfig signingConfigs.release" + content[release[0] + 1 :]
