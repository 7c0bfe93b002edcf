import os
from pathlib import Path

# --- CONFIGURATION ---
BASE_DIR = Path(__file__).parent.parent.absolute()
DATA_DIR = Path(os.getenv("CAPBUILDER_DATA_DIR", str(BASE_DIR))).absolute()
WORKSPACE_DIR = DATA_DIR / "workspace"
PUBLIC_DIR = DATA_DIR / "public"
LIB_DIR = BASE_DIR / "lib"

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3001"))
PUBLIC_URL = os.getenv("CAPBUILDER_PUBLIC_URL", "")
CLEANUP_ON_FINISH = os.getenv("CAPBUILDER_CLEANUP", "").lower() in ("1", "true", "yes")

# Fixed web directory handed to `cap init --web-dir`
WEB_ROOT_DIRNAME = "app-web"
LOG_FILENAME = "build.log"

# Release signing (keystore is generated per build)
KEYSTORE_FILENAME = "release.keystore"
KEYSTORE_ALIAS = os.getenv("KEYSTORE_ALIAS", "capbuilder")
KEYSTORE_PASSWORD = os.getenv("KEYSTORE_PASSWORD", "capbuilder")

# --- TIMEOUTS (seconds) ---
DEFAULT_TIMEOUT = 300
CLONE_TIMEOUT = 300
INSTALL_TIMEOUT = 600
WEB_BUILD_TIMEOUT = 600
SHELL_TIMEOUT = 300
COMPILE_TIMEOUT = 900
# Multiplier applied to install/build/compile for heavy projects
LARGE_PROJECT_FACTOR = 2

# --- RETRIES ---
NETWORK_RETRIES = 2
RETRY_BACKOFF = 5.0

# --- WORKSPACE SWEEP ---
WORKSPACE_MAX_AGE = 24 * 60 * 60
SWEEP_INTERVAL = 6 * 60 * 60

# Capacitor packages installed into every project before `cap init`
CAPACITOR_PACKAGES = ["@capacitor/core", "@capacitor/cli", "@capacitor/android"]


def ensure_dirs() -> None:
    WORKSPACE_DIR.mkdir(parents=True, exist_ok=True)
    PUBLIC_DIR.mkdir(parents=True, exist_ok=True)
