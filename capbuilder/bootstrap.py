"""Install a private JDK and Android SDK under ``lib/``.

Run once on a fresh host (``capbuilder-setup``); the build server picks these
up automatically when JAVA_HOME / ANDROID_HOME are not set.
"""
import logging
import os
import subprocess
import sys
import tarfile
import zipfile
from pathlib import Path

import httpx

from capbuilder.config import LIB_DIR
from capbuilder.toolchain import BUNDLED_ANDROID_HOME, BUNDLED_JAVA_HOME

logger = logging.getLogger("capbuilder.setup")

# Tool Versions & URLs
JDK_URL = "https://download.java.net/java/GA/jdk17.0.2/dfd4a8d0985749f896bed50d7138ee7f/8/GPL/openjdk-17.0.2_linux-x64_bin.tar.gz"
CMDLINE_TOOLS_URL = "https://dl.google.com/android/repository/commandlinetools-linux-11076708_latest.zip"
SDK_PACKAGES = ["platform-tools", "platforms;android-34", "build-tools;34.0.0"]

CMDLINE_TOOLS_BIN = BUNDLED_ANDROID_HOME / "cmdline-tools" / "latest" / "bin"


def download_file(url: str, dest_path: Path) -> None:
    if dest_path.exists():
        return
    logger.info("Downloading %s...", url)
    partial = dest_path.with_suffix(dest_path.suffix + ".part")
    with httpx.stream("GET", url, follow_redirects=True, timeout=httpx.Timeout(60.0, read=300.0)) as response:
        response.raise_for_status()
        with partial.open("wb") as fh:
            for chunk in response.iter_bytes():
                fh.write(chunk)
    partial.rename(dest_path)


def extract_archive(file_path: Path, extract_to: Path) -> None:
    logger.info("Extracting %s...", file_path.name)
    if file_path.name.endswith(".tar.gz"):
        with tarfile.open(file_path, "r:gz") as tar:
            tar.extractall(path=extract_to, filter="tar")
    elif file_path.name.endswith(".zip"):
        with zipfile.ZipFile(file_path, "r") as archive:
            archive.extractall(path=extract_to)
            # zipfile drops permission bits
            for info in archive.infolist():
                mode = info.external_attr >> 16
                if mode:
                    os.chmod(extract_to / info.filename, mode)


def setup_java() -> None:
    java_bin = BUNDLED_JAVA_HOME / "bin" / "java"
    if not BUNDLED_JAVA_HOME.exists():
        jvm_dir = BUNDLED_JAVA_HOME.parent
        jvm_dir.mkdir(parents=True, exist_ok=True)
        archive = jvm_dir / "jdk.tar.gz"
        download_file(JDK_URL, archive)
        extract_archive(archive, jvm_dir)
        archive.unlink()
    else:
        logger.info("JDK 17 is already installed.")
    if java_bin.exists():
        os.chmod(java_bin, 0o755)


def setup_android_sdk() -> None:
    target_dir = CMDLINE_TOOLS_BIN.parent
    if target_dir.exists():
        logger.info("Android command line tools are already installed.")
    else:
        tools_root = target_dir.parent
        tools_root.mkdir(parents=True, exist_ok=True)
        archive = tools_root / "tools.zip"
        download_file(CMDLINE_TOOLS_URL, archive)
        extract_archive(archive, tools_root)
        archive.unlink()
        # The zip unpacks to cmdline-tools/cmdline-tools; sdkmanager wants cmdline-tools/latest
        (tools_root / "cmdline-tools").rename(target_dir)

    env = os.environ.copy()
    env["JAVA_HOME"] = str(BUNDLED_JAVA_HOME)
    env["PATH"] = f"{BUNDLED_JAVA_HOME / 'bin'}{os.pathsep}{env.get('PATH', '')}"
    env["ANDROID_HOME"] = str(BUNDLED_ANDROID_HOME)

    sdkmanager = CMDLINE_TOOLS_BIN / "sdkmanager"
    if sdkmanager.exists():
        os.chmod(sdkmanager, 0o755)

    logger.info("Checking/installing Android SDK packages...")
    # sdkmanager asks once per license; answer them all
    answers = "y\n" * 50
    subprocess.run(
        [str(sdkmanager), f"--sdk_root={BUNDLED_ANDROID_HOME}", "--licenses"],
        input=answers, text=True, env=env, stdout=subprocess.DEVNULL, check=True,
    )
    subprocess.run(
        [str(sdkmanager), f"--sdk_root={BUNDLED_ANDROID_HOME}", *SDK_PACKAGES],
        input=answers, text=True, env=env, stdout=subprocess.DEVNULL, check=True,
    )


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="[SETUP] %(message)s")
    print("=== CAPBUILDER SETUP ===")
    LIB_DIR.mkdir(exist_ok=True)
    try:
        setup_java()
        setup_android_sdk()
    except (httpx.HTTPError, OSError, subprocess.CalledProcessError) as e:
        print(f"\n[ERROR] Setup failed: {e}")
        sys.exit(1)

    print("\n=== SETUP COMPLETE ===")
    print("Environment ready. You can now run 'capbuilder'")


if __name__ == "__main__":
    main()
