"""The build orchestrator: one request in, one artifact (or one failure) out.

Stages run strictly in sequence; each depends on the filesystem state left by
the previous one. Every transition is reported as a ``status`` event and the
run always ends with exactly one ``result`` event.
"""
import asyncio
import json
import logging
import os
import shutil
import stat
from pathlib import Path
from typing import Awaitable, Callable

from capbuilder import config
from capbuilder.diagnostics import OutputTail
from capbuilder.errors import ArtifactNotFoundError, BuildError, BuildScriptError, ToolchainMissingError
from capbuilder.events import BuildLog
from capbuilder.icons import load_image, replace_icons, replace_splash
from capbuilder.layout import (
    NestedFrontend,
    StaticSite,
    assemble_web_root,
    detect_directory,
    find_web_output,
    has_build_script,
    is_large_project,
    read_manifest,
    static_web_root,
)
from capbuilder.models import BuildRequest, BuildStage, safe_name
from capbuilder.patches import (
    BuildScriptPatch,
    GradlePropertiesPatch,
    JsonMergePatch,
    MinifyPatch,
    OrientationPatch,
    PackagingPatch,
    Patch,
    PermissionPatch,
    ResolutionPinPatch,
    SdkLevelPatch,
    SigningPatch,
    SplashConfigPatch,
    ThemePatch,
    TsconfigPatch,
    VersionPatch,
    patch_file,
)
from capbuilder.process import RetryClass, execute
from capbuilder.toolchain import Toolchain
from capbuilder.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

Executor = Callable[..., Awaitable[None]]

GRADLE_TASKS = {
    ("debug", "package"): "assembleDebug",
    ("release", "package"): "assembleRelease",
    ("debug", "bundle"): "bundleDebug",
    ("release", "bundle"): "bundleRelease",
}

# Relative to the android/ project; first existing wins
ARTIFACT_PATHS = {
    ("debug", "package"): ["app/build/outputs/apk/debug/app-debug.apk"],
    ("release", "package"): [
        "app/build/outputs/apk/release/app-release.apk",
        "app/build/outputs/apk/release/app-release-unsigned.apk",
    ],
    ("debug", "bundle"): ["app/build/outputs/bundle/debug/app-debug.aab"],
    ("release", "bundle"): ["app/build/outputs/bundle/release/app-release.aab"],
}

CAPACITOR_CONFIGS = ("capacitor.config.json", "capacitor.config.ts", "capacitor.config.js")
TSCONFIG_GLOB = "tsconfig*.json"


def gradle_task(build_type: str, output_format: str) -> str:
    return GRADLE_TASKS[(build_type, output_format)]


def locate_artifact(android_dir: Path, build_type: str, output_format: str) -> Path | None:
    for relative in ARTIFACT_PATHS[(build_type, output_format)]:
        candidate = android_dir / relative
        if candidate.is_file():
            return candidate
    return None


def artifact_name(request: BuildRequest, build_id: str) -> str:
    # build id suffix keeps same-name/same-version builds from overwriting each other
    extension = "aab" if request.is_bundle else "apk"
    return f"{safe_name(request.app_name)}-{safe_name(request.version_name)}-{build_id[:8]}.{extension}"


class BuildPipeline:
    def __init__(
        self,
        request: BuildRequest,
        build_id: str,
        log: BuildLog,
        executor: Executor = execute,
        toolchain: Toolchain | None = None,
        workspaces: WorkspaceManager | None = None,
        public_dir: Path = config.PUBLIC_DIR,
        base_url: str = "",
        cleanup: bool = config.CLEANUP_ON_FINISH,
        image_loader: Callable[[str], Awaitable[bytes]] = load_image,
    ):
        self.request = request
        self.build_id = build_id
        self.log = log
        self.executor = executor
        self.toolchain = toolchain or Toolchain()
        self.workspaces = workspaces or WorkspaceManager()
        self.public_dir = Path(public_dir)
        self.base_url = base_url.rstrip("/")
        self.cleanup = cleanup
        self.image_loader = image_loader
        self.tail = OutputTail()
        self.large = False
        self.signed = False

    # --- RUN ---

    async def run(self) -> str | None:
        """Drive the build to SUCCESS or ERROR; returns the download URL."""
        self.log.info(f"Starting build process for ID: {self.build_id}")
        try:
            download_url = await self._run()
        except BuildError as e:
            self._fail(e.message, e.kind)
            return None
        except asyncio.CancelledError:
            self._fail("build cancelled", "cancelled")
            raise
        except Exception as e:
            logger.exception("build %s crashed", self.build_id)
            self._fail(str(e) or type(e).__name__, "internal")
            return None
        else:
            self.log.status(BuildStage.SUCCESS)
            self.log.success("APK generated successfully!" if not self.request.is_bundle else "Bundle generated successfully!")
            self.log.result(True, download_url=download_url)
            return download_url
        finally:
            self.log.stream.close()
            self.log.close()
            if self.cleanup:
                await asyncio.to_thread(self.workspaces.cleanup, self.build_id)

    def _fail(self, message: str, kind: str) -> None:
        stage = self.log.stage
        hint = self.tail.hint()
        if stage is not None and stage is not BuildStage.VERIFYING_ENVIRONMENT:
            message = f"{stage.value} failed: {message}"
        if hint:
            message = f"{message} ({hint})"
        logger.warning("build %s failed: %s", self.build_id, message)
        self.log.status(BuildStage.ERROR)
        self.log.error(message)
        self.log.result(False, error=message, error_kind=kind, stage=stage)

    async def _run(self) -> str:
        request = self.request

        self.log.status(BuildStage.VERIFYING_ENVIRONMENT)
        self._verify_environment()

        # 1. Clone
        self.log.status(BuildStage.CLONING)
        project = await asyncio.to_thread(self.workspaces.prepare, self.build_id)
        self.log.command(f"Cloning {request.repo_url}...")
        await self._exec(
            "git",
            ["clone", "--depth", "1", request.repo_url, "."],
            project,
            timeout=config.CLONE_TIMEOUT,
            retry_class=RetryClass.NETWORK,
        )
        self.log.attach_file(project / config.LOG_FILENAME)

        # 2. Install + build web assets
        web_source = await self._build_web(project)

        # 3. Web root
        self.log.status(BuildStage.ASSEMBLING_WEB_ROOT)
        web_root = project / config.WEB_ROOT_DIRNAME
        self.log.info(f"Copying web assets from {self._relative(web_source, project)} to {config.WEB_ROOT_DIRNAME}/")
        placeholder = await asyncio.to_thread(assemble_web_root, web_source, web_root, request.app_name)
        if placeholder:
            self.log.warning("No index.html found, generated a placeholder page")

        # 4. Capacitor shell
        self.log.status(BuildStage.SHELL_INIT)
        await self._init_shell(project)

        self.log.status(BuildStage.PLATFORM_ADD)
        android = project / "android"
        if android.exists():
            self.log.warning("Repository already contains android/, regenerating it")
            await asyncio.to_thread(shutil.rmtree, android)
        self.log.command("Adding Android platform...")
        await self._exec("npx", ["cap", "add", "android"], project, timeout=config.SHELL_TIMEOUT)

        # 5. Patch generated native project
        self.log.status(BuildStage.APPLY_PATCHES)
        if request.is_release:
            await self._generate_keystore(android / "app")
        self._apply_patches(project, android)

        self.log.status(BuildStage.SHELL_SYNC)
        self.log.command("Syncing Capacitor...")
        await self._exec("npx", ["cap", "sync", "android"], project, timeout=config.SHELL_TIMEOUT)

        self.log.status(BuildStage.ICON_APPLY)
        await self._apply_images(android / "app" / "src" / "main" / "res")

        # 6. Gradle
        gradlew = android / "gradlew"
        if gradlew.exists():
            gradlew.chmod(gradlew.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        self.log.status(BuildStage.CLEAN)
        try:
            await self._exec("bash", ["gradlew", "clean"], android, timeout=config.SHELL_TIMEOUT)
        except BuildError as e:
            # A fresh project may not clean; the compile step will tell
            self.log.warning(f"gradle clean failed, continuing: {e.message}")

        self.log.status(BuildStage.COMPILE)
        task = gradle_task(request.build_type, request.output_format)
        self.log.command(f"Compiling with Gradle ({task}), this may take a while...")
        await self._exec(
            "bash",
            ["gradlew", task, "--stacktrace"],
            android,
            timeout=config.COMPILE_TIMEOUT * self._factor,
        )

        # 7. Verify + publish
        self.log.status(BuildStage.LOCATE_ARTIFACT)
        self.log.info("Locating generated artifact...")
        artifact = locate_artifact(android, request.build_type, request.output_format)
        if artifact is None:
            expected = ARTIFACT_PATHS[(request.build_type, request.output_format)][0]
            raise ArtifactNotFoundError(f"Artifact not found after build (expected android/{expected})")

        self.public_dir.mkdir(parents=True, exist_ok=True)
        public_name = artifact_name(request, self.build_id)
        await asyncio.to_thread(shutil.move, str(artifact), str(self.public_dir / public_name))
        self.log.info(f"Artifact published as {public_name}")
        return f"{self.base_url}/download/{public_name}"

    # --- STAGES ---

    @property
    def _factor(self) -> int:
        return config.LARGE_PROJECT_FACTOR if self.large else 1

    def _verify_environment(self) -> None:
        report = self.toolchain.verify()
        for tool in report.missing_optional:
            self.log.warning(f"Optional tool not found: {tool} (compilation may fail)")
        if not report.ok:
            raise ToolchainMissingError(f"Missing required tools: {', '.join(report.missing_required)}")
        self.log.info("Environment OK")

    async def _build_web(self, project: Path) -> Path:
        strategy = detect_directory(project)
        self.log.info(f"Detected project layout: {strategy.name}")
        if isinstance(strategy, StaticSite):
            self.log.info("Static site, skipping install and build")
            return static_web_root(project)

        if isinstance(strategy, NestedFrontend):
            node_dir = project / strategy.subpath
            install_stage, build_stage = BuildStage.INSTALLING_FRONTEND, BuildStage.BUILDING_FRONTEND
        else:
            node_dir = project
            install_stage, build_stage = BuildStage.INSTALLING_ROOT, BuildStage.BUILDING_ROOT

        manifest = read_manifest(node_dir)
        self.large = is_large_project(manifest)
        if self.large:
            self.log.info("Large project detected, extending timeouts and Gradle memory")

        self.log.status(install_stage)
        self.log.command("Installing dependencies (npm install)...")
        await self._exec(
            "npm",
            ["install", "--no-audit", "--no-fund"],
            node_dir,
            timeout=config.INSTALL_TIMEOUT * self._factor,
            retry_class=RetryClass.NETWORK,
        )

        self.log.status(build_stage)
        if not has_build_script(manifest):
            raise BuildScriptError('package.json has no "build" script')
        self._soft_patch(node_dir / "package.json", BuildScriptPatch(), root=project)
        for tsconfig in sorted(node_dir.glob(TSCONFIG_GLOB)):
            self._soft_patch(tsconfig, TsconfigPatch(), root=project)
        self.log.command("Building web assets (npm run build)...")
        await self._exec("npm", ["run", "build"], node_dir, timeout=config.WEB_BUILD_TIMEOUT * self._factor)

        output = find_web_output(node_dir)
        if output is None:
            self.log.warning("No build output directory found, using the source tree as web root")
            return node_dir
        return output

    async def _init_shell(self, project: Path) -> None:
        request = self.request
        manifest_path = project / "package.json"
        if not manifest_path.exists():
            manifest = {"name": safe_name(request.app_name).lower(), "version": "1.0.0", "private": True}
            manifest_path.write_text(json.dumps(manifest, indent=2) + "\n", encoding="utf-8")

        self.log.command("Installing Capacitor...")
        await self._exec(
            "npm",
            ["install", "--no-audit", "--no-fund", *config.CAPACITOR_PACKAGES],
            project,
            timeout=config.INSTALL_TIMEOUT * self._factor,
            retry_class=RetryClass.NETWORK,
        )

        # Existing JSON config is kept for its plugin settings; TS/JS configs would shadow ours
        previous = {}
        for name in CAPACITOR_CONFIGS:
            path = project / name
            if not path.exists():
                continue
            if name.endswith(".json"):
                try:
                    previous = json.loads(path.read_text(encoding="utf-8"))
                except ValueError:
                    self.log.warning("Ignoring unreadable capacitor.config.json")
            path.unlink()

        self.log.command("Initializing Capacitor...")
        await self._exec(
            "npx",
            ["cap", "init", request.app_name, request.app_id, "--web-dir", config.WEB_ROOT_DIRNAME],
            project,
            timeout=config.SHELL_TIMEOUT,
        )
        for name in CAPACITOR_CONFIGS[1:]:
            if (project / name).exists():
                (project / name).unlink()

        config_path = project / "capacitor.config.json"
        if not config_path.exists():
            config_path.write_text("{}\n", encoding="utf-8")
        identity = {"appId": request.app_id, "appName": request.app_name, "webDir": config.WEB_ROOT_DIRNAME}
        patch_file(config_path, JsonMergePatch({**previous, **identity}))

    async def _generate_keystore(self, app_dir: Path) -> None:
        keystore = app_dir / config.KEYSTORE_FILENAME
        if keystore.exists():
            keystore.unlink()
        self.log.command("Generating release keystore...")
        try:
            await self._exec(
                "keytool",
                [
                    "-genkeypair", "-v",
                    "-keystore", config.KEYSTORE_FILENAME,
                    "-alias", config.KEYSTORE_ALIAS,
                    "-keyalg", "RSA",
                    "-keysize", "2048",
                    "-validity", "10000",
                    "-storepass", config.KEYSTORE_PASSWORD,
                    "-keypass", config.KEYSTORE_PASSWORD,
                    "-dname", f"CN={self.request.app_name}, OU=Mobile, O={self.request.app_name}, C=US",
                ],
                app_dir,
                timeout=config.DEFAULT_TIMEOUT,
            )
        except BuildError as e:
            self.log.warning(f"Could not generate keystore, release will be unsigned: {e.message}")
            return
        self.signed = keystore.exists()

    def _apply_patches(self, project: Path, android: Path) -> None:
        request = self.request
        app_gradle = android / "app" / "build.gradle"
        variables = android / "variables.gradle"
        properties = android / "gradle.properties"
        main = android / "app" / "src" / "main"

        app_patches: list[Patch] = [
            VersionPatch(request.version_code, request.version_name),
            PackagingPatch(),
            ResolutionPinPatch("module"),
        ]
        if request.is_release and request.minify:
            app_patches.append(MinifyPatch())
        if self.signed:
            app_patches.append(SigningPatch(config.KEYSTORE_FILENAME, config.KEYSTORE_ALIAS, config.KEYSTORE_PASSWORD))
        sdk_levels = SdkLevelPatch(request.min_sdk, request.target_sdk)
        if not variables.exists():
            app_patches.append(sdk_levels)

        for patch in app_patches:
            self._soft_patch(app_gradle, patch, root=project)
        if variables.exists():
            self._soft_patch(variables, sdk_levels, root=project)

        self._soft_patch(android / "build.gradle", ResolutionPinPatch("root"), root=project)
        plugins_gradle = android / "capacitor-cordova-android-plugins" / "build.gradle"
        if plugins_gradle.exists():
            self._soft_patch(plugins_gradle, ResolutionPinPatch("module"), root=project)

        if not properties.exists():
            properties.touch()
        self._soft_patch(properties, GradlePropertiesPatch(large=self.large), root=project)

        manifest = main / "AndroidManifest.xml"
        self._soft_patch(manifest, OrientationPatch(request.orientation), root=project)
        self._soft_patch(manifest, PermissionPatch(request.permissions), root=project)
        self._soft_patch(main / "res" / "values" / "styles.xml", ThemePatch(request.fullscreen), root=project)
        self._soft_patch(
            project / "capacitor.config.json",
            SplashConfigPatch(request.splash_color, request.splash_duration),
            root=project,
        )

    async def _apply_images(self, res_dir: Path) -> None:
        request = self.request
        if not request.icon and not request.splash_image:
            self.log.info("No custom icon or splash image, keeping defaults")
            return
        if request.icon:
            try:
                image = await self.image_loader(request.icon)
                count = await asyncio.to_thread(replace_icons, res_dir, image)
                self.log.info(f"Replaced launcher icon ({count} files)")
            except Exception as e:
                self.log.warning(f"Icon replacement failed, keeping default icon: {e}")
        if request.splash_image:
            try:
                image = await self.image_loader(request.splash_image)
                count = await asyncio.to_thread(replace_splash, res_dir, image)
                self.log.info(f"Replaced splash image ({count} files)")
            except Exception as e:
                self.log.warning(f"Splash image replacement failed: {e}")

    # --- HELPERS ---

    async def _exec(
        self,
        command: str,
        args: list[str],
        cwd: Path,
        timeout: float = config.DEFAULT_TIMEOUT,
        retry_class: RetryClass = RetryClass.NONE,
    ) -> None:
        self.log.command(f"$ {command} {' '.join(args)}")
        self.tail.clear()

        def on_line(line: str) -> None:
            self.tail(line)
            self.log.info(line)

        await self.executor(
            command,
            args,
            cwd,
            on_line=on_line,
            retries=config.NETWORK_RETRIES if retry_class is RetryClass.NETWORK else 0,
            timeout=timeout,
            retry_class=retry_class,
            toolchain=self.toolchain,
        )

    def _soft_patch(self, path: Path, patch: Patch, root: Path) -> None:
        """Compatibility shims: a failing patch is logged, never fatal."""
        relative = self._relative(path, root)
        try:
            if patch_file(path, patch):
                self.log.info(f"Patched {relative} ({patch.name})")
        except Exception as e:
            self.log.warning(f"Patch {patch.name} skipped for {relative}: {e}")

    @staticmethod
    def _relative(path: Path, root: Path) -> str:
        try:
            return path.relative_to(root).as_posix() or "."
        except ValueError:
            return os.fspath(path)
