"""Shared fixtures: isolated data dir, a stub toolchain and a fake executor
that stands in for git / npm / the Capacitor CLI / Gradle."""
import json
import os
import tempfile
from pathlib import Path

# Must be set before capbuilder.config (or app) is imported
os.environ.setdefault("CAPBUILDER_DATA_DIR", tempfile.mkdtemp(prefix="capbuilder-test-"))

import pytest

from capbuilder.errors import ExitCodeError
from capbuilder.events import BuildLog, EventStream
from capbuilder.toolchain import Toolchain
from capbuilder.workspace import WorkspaceManager

# --- CAPACITOR TEMPLATES (trimmed copies of what `cap add android` writes) ---

APP_BUILD_GRADLE = """apply plugin: 'com.android.application'

android {
    namespace "com.example.app"
    compileSdkVersion rootProject.ext.compileSdkVersion
    defaultConfig {
        applicationId "com.example.app"
        minSdkVersion rootProject.ext.minSdkVersion
        targetSdkVersion rootProject.ext.targetSdkVersion
        versionCode 1
        versionName "1.0"
        testInstrumentationRunner "androidx.test.runner.AndroidJUnitRunner"
    }
    buildTypes {
        release {
            minifyEnabled false
            proguardFiles getDefaultProguardFile('proguard-android.txt'), 'proguard-rules.pro'
        }
    }
}

dependencies {
    implementation fileTree(include: ['*.jar'], dir: 'libs')
    implementation project(':capacitor-android')
}
"""

ROOT_BUILD_GRADLE = """buildscript {
    repositories {
        google()
        mavenCentral()
    }
    dependencies {
        classpath 'com.android.tools.build:gradle:8.2.1'
    }
}

apply from: "variables.gradle"

allprojects {
    repositories {
        google()
        mavenCentral()
    }
}
"""

VARIABLES_GRADLE = """ext {
    minSdkVersion = 22
    compileSdkVersion = 34
    targetSdkVersion = 34
    androidxActivityVersion = '1.8.0'
}
"""

GRADLE_PROPERTIES = """# Project-wide Gradle settings.
org.gradle.jvmargs=-Xmx1536m
android.useAndroidX=true
"""

ANDROID_MANIFEST = """<?xml version="1.0" encoding="utf-8"?>
<manifest xmlns:android="http://schemas.android.com/apk/res/android">

    <application
        android:allowBackup="true"
        android:icon="@mipmap/ic_launcher"
        android:label="@string/app_name"
        android:theme="@style/AppTheme">

        <activity
            android:configChanges="orientation|keyboardHidden|keyboard|screenSize|locale|smallestScreenSize|screenLayout|uiMode"
            android:name=".MainActivity"
            android:label="@string/title_activity_main"
            android:theme="@style/AppTheme.NoActionBarLaunch"
            android:launchMode="singleTask"
            android:exported="true">

            <intent-filter>
                <action android:name="android.intent.action.MAIN" />
                <category android:name="android.intent.category.LAUNCHER" />
            </intent-filter>

        </activity>
    </application>

    <!-- Permissions -->

    <uses-permission android:name="android.permission.INTERNET" />
</manifest>
"""

STYLES_XML = """<?xml version="1.0" encoding="utf-8"?>
<resources>

    <style name="AppTheme" parent="Theme.AppCompat.Light.DarkActionBar">
        <item name="colorPrimary">@color/colorPrimary</item>
    </style>

    <style name="AppTheme.NoActionBar" parent="Theme.AppCompat.DayNight.NoActionBar">
        <item name="windowActionBar">false</item>
        <item name="windowNoTitle">true</item>
        <item name="android:background">@null</item>
    </style>

    <style name="AppTheme.NoActionBarLaunch" parent="Theme.SplashScreen">
        <item name="android:background">@drawable/splash</item>
    </style>
</resources>
"""

ANDROID_SKELETON = {
    "build.gradle": ROOT_BUILD_GRADLE,
    "variables.gradle": VARIABLES_GRADLE,
    "gradle.properties": GRADLE_PROPERTIES,
    "gradlew": "#!/usr/bin/env sh\n",
    "app/build.gradle": APP_BUILD_GRADLE,
    "app/src/main/AndroidManifest.xml": ANDROID_MANIFEST,
    "app/src/main/res/values/styles.xml": STYLES_XML,
    "app/src/main/res/mipmap-anydpi-v26/ic_launcher.xml": "<adaptive-icon/>",
    "app/src/main/res/mipmap-hdpi/ic_launcher.png": "old",
    "app/src/main/res/mipmap-xhdpi/ic_launcher.png": "old",
    "app/src/main/res/drawable/splash.png": "old",
    "capacitor-cordova-android-plugins/build.gradle": "apply plugin: 'com.android.library'\n",
}

NODE_REPO = {
    "package.json": json.dumps(
        {"name": "widget", "version": "2.1.0", "scripts": {"build": "tsc && vite build"}},
        indent=2,
    ),
    "tsconfig.json": '{\n  "compilerOptions": {\n    "noUnusedLocals": true,\n    "strict": true\n  }\n}\n',
    "index.html": "<!doctype html><script src=/src/main.ts></script>",
    "src/main.ts": "console.log('hi')",
}


def write_tree(root: Path, files: dict[str, str]) -> None:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


class FakeExecutor:
    """Records every invocation and fakes the files each tool would leave."""

    def __init__(
        self,
        repo: dict[str, str] | None = None,
        build_output: dict[str, str] | None = None,
        failures: dict[str, Exception] | None = None,
        produce_artifact: bool = True,
    ):
        self.repo = NODE_REPO if repo is None else repo
        self.build_output = {"dist/index.html": "<html>built</html>"} if build_output is None else build_output
        self.failures = failures or {}
        self.produce_artifact = produce_artifact
        self.calls: list[dict] = []

    def commands(self) -> list[str]:
        return [call["line"] for call in self.calls]

    async def __call__(self, command, args, cwd, on_line=None, retries=0, timeout=0, retry_class=None, toolchain=None):
        cwd = Path(cwd)
        cwd.mkdir(parents=True, exist_ok=True)
        line = " ".join([command, *args])
        self.calls.append({"line": line, "cwd": cwd, "retries": retries, "retry_class": retry_class, "timeout": timeout})
        for prefix, error in self.failures.items():
            if line.startswith(prefix):
                if on_line:
                    on_line(f"fatal: {prefix} failed")
                raise error
        if on_line:
            on_line(f"ran {line}")

        if command == "git":
            write_tree(cwd, self.repo)
        elif line == "npm run build":
            write_tree(cwd, self.build_output)
        elif line.startswith("npx cap init"):
            (cwd / "capacitor.config.json").write_text(
                json.dumps({"appId": args[3], "appName": args[2], "webDir": args[5]}), encoding="utf-8"
            )
        elif line == "npx cap add android":
            write_tree(cwd / "android", ANDROID_SKELETON)
        elif command == "keytool":
            (cwd / args[args.index("-keystore") + 1]).write_bytes(b"keystore")
        elif command == "bash" and args[1] != "clean" and self.produce_artifact:
            task = args[1]
            variant = "release" if "Release" in task else "debug"
            if task.startswith("bundle"):
                out = cwd / f"app/build/outputs/bundle/{variant}/app-{variant}.aab"
            else:
                out = cwd / f"app/build/outputs/apk/{variant}/app-{variant}.apk"
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_bytes(b"PK\x03\x04")


@pytest.fixture
def toolchain(tmp_path) -> Toolchain:
    sdk = tmp_path / "sdk"
    sdk.mkdir()
    return Toolchain(java_home=tmp_path / "jdk", android_home=sdk, which=lambda tool, path=None: f"/usr/bin/{tool}")


@pytest.fixture
def workspaces(tmp_path) -> WorkspaceManager:
    return WorkspaceManager(tmp_path / "workspace")


@pytest.fixture
def public_dir(tmp_path) -> Path:
    return tmp_path / "public"


@pytest.fixture
def build_log() -> BuildLog:
    return BuildLog("build-1234567890", EventStream())


async def drain(stream: EventStream) -> list[dict]:
    return [event async for event in stream.events()]
