import json

import pytest

from capbuilder.patches import (
    FULLSCREEN_ITEM,
    PACKAGING_SENTINEL,
    RESOLUTION_SENTINEL,
    BuildScriptPatch,
    GradlePropertiesPatch,
    MinifyPatch,
    OrientationPatch,
    PackagingPatch,
    PermissionPatch,
    ResolutionPinPatch,
    SdkLevelPatch,
    SigningPatch,
    SplashConfigPatch,
    ThemePatch,
    TsconfigPatch,
    VersionPatch,
    android_permissions,
    patch_file,
)
from conftest import (
    ANDROID_MANIFEST,
    APP_BUILD_GRADLE,
    GRADLE_PROPERTIES,
    ROOT_BUILD_GRADLE,
    STYLES_XML,
    VARIABLES_GRADLE,
)

PACKAGE_JSON = json.dumps({"name": "w", "scripts": {"build": "vue-tsc --noEmit && vite build", "dev": "vite"}})
TSCONFIG = '{\n  // comments are allowed\n  "compilerOptions": {"noUnusedLocals": true, "noUnusedParameters": true, "noEmitOnError": true}\n}\n'
CAPACITOR_CONFIG = '{"appId": "com.widget.app", "appName": "Widget", "webDir": "app-web"}'

IDEMPOTENCE_CASES = [
    (VersionPatch(3, "2.1.0"), APP_BUILD_GRADLE),
    (VersionPatch(7, "1.0"), "android {\n    defaultConfig {\n    }\n}\n"),
    (OrientationPatch("portrait"), ANDROID_MANIFEST),
    (ThemePatch(True), STYLES_XML),
    (ThemePatch(False), STYLES_XML),
    (ResolutionPinPatch("module"), APP_BUILD_GRADLE),
    (ResolutionPinPatch("root"), ROOT_BUILD_GRADLE),
    (PackagingPatch(), APP_BUILD_GRADLE),
    (GradlePropertiesPatch(large=True), GRADLE_PROPERTIES),
    (PermissionPatch({"CAMERA": True, "LOCATION": True}), ANDROID_MANIFEST),
    (SplashConfigPatch("#000000", 1000), CAPACITOR_CONFIG),
    (MinifyPatch(), APP_BUILD_GRADLE),
    (MinifyPatch(), "android {\n}\n"),
    (BuildScriptPatch(), PACKAGE_JSON),
    (TsconfigPatch(), TSCONFIG),
    (SdkLevelPatch(24, 35), VARIABLES_GRADLE),
    (SigningPatch("release.keystore", "key", "secret"), APP_BUILD_GRADLE),
]


@pytest.mark.parametrize("patch,content", IDEMPOTENCE_CASES, ids=lambda v: getattr(v, "name", None))
def test_second_application_is_a_no_op(patch, content):
    once = patch.apply(content)
    assert patch.apply(once) == once
    assert not patch.applies(once)


def test_patch_file_reports_changes_once(tmp_path):
    target = tmp_path / "build.gradle"
    target.write_text(APP_BUILD_GRADLE)

    assert patch_file(target, PackagingPatch()) is True
    first = target.read_bytes()
    assert patch_file(target, PackagingPatch()) is False
    assert target.read_bytes() == first
    assert target.read_text().count(PACKAGING_SENTINEL) == 1


def test_version_replaced_in_default_config():
    patched = VersionPatch(3, "2.1.0").apply(APP_BUILD_GRADLE)
    assert "        versionCode 3\n" in patched
    assert '        versionName "2.1.0"\n' in patched
    assert "versionCode 1" not in patched


def test_version_inserted_when_absent():
    patched = VersionPatch(5, 'bad"name').apply("android {\n    defaultConfig {\n    }\n}\n")
    assert "versionCode 5" in patched
    assert 'versionName "badname"' in patched


def test_orientation_added_to_main_activity():
    patched = OrientationPatch("landscape").apply(ANDROID_MANIFEST)
    assert patched.count('android:screenOrientation="landscape"') == 1
    assert patched.index("screenOrientation") < patched.index('android:name=".MainActivity"')


def test_orientation_user_is_a_no_op():
    assert OrientationPatch("user").apply(ANDROID_MANIFEST) == ANDROID_MANIFEST


def test_orientation_kept_when_already_declared():
    manifest = ANDROID_MANIFEST.replace("<activity", '<activity android:screenOrientation="portrait"')
    assert OrientationPatch("landscape").apply(manifest) == manifest


def test_theme_without_fullscreen_keeps_status_bar():
    patched = ThemePatch(False).apply(STYLES_XML)
    assert "android:windowFullscreen" not in patched
    assert "android:statusBarColor" in patched
    assert 'parent="Theme.AppCompat.Light.NoActionBar"' in patched
    # the launch theme is left alone
    assert '<style name="AppTheme.NoActionBarLaunch" parent="Theme.SplashScreen">' in patched


def test_theme_fullscreen_uses_immersive_items():
    patched = ThemePatch(True).apply(STYLES_XML)
    assert FULLSCREEN_ITEM in patched
    assert "android:statusBarColor" not in patched


def test_theme_switches_between_modes():
    fullscreen = ThemePatch(True).apply(STYLES_XML)
    windowed = ThemePatch(False).apply(fullscreen)
    assert FULLSCREEN_ITEM not in windowed
    assert windowed.count('name="AppTheme.NoActionBar"') == 1


def test_permissions_internet_and_camera_only():
    patched = PermissionPatch({"INTERNET": True, "CAMERA": True}).apply(ANDROID_MANIFEST)
    assert patched.count("<uses-permission") == 2
    assert patched.count('android:name="android.permission.INTERNET"') == 1
    assert 'android:name="android.permission.CAMERA"' in patched
    assert patched.index("android.permission.CAMERA") < patched.index("<application")


def test_internet_is_always_granted():
    assert android_permissions({}) == ["android.permission.INTERNET"]
    assert android_permissions({"INTERNET": False}) == ["android.permission.INTERNET"]


def test_permission_flags_map_to_platform_names():
    perms = android_permissions({"location": True, "microphone": True, "vibration": True, "notifications": False})
    assert perms == [
        "android.permission.INTERNET",
        "android.permission.ACCESS_FINE_LOCATION",
        "android.permission.ACCESS_COARSE_LOCATION",
        "android.permission.RECORD_AUDIO",
        "android.permission.VIBRATE",
    ]


def test_resolution_pins_appended_once_per_scope():
    module = ResolutionPinPatch("module").apply(APP_BUILD_GRADLE)
    root = ResolutionPinPatch("root").apply(ROOT_BUILD_GRADLE)
    assert module.count(RESOLUTION_SENTINEL) == 1
    assert 'force "org.jetbrains.kotlin:kotlin-stdlib-jdk8:' in module
    assert root.rstrip().endswith("}")
    assert "allprojects {\n    configurations.all {" in root


def test_packaging_rules_inside_android_block():
    patched = PackagingPatch().apply(APP_BUILD_GRADLE)
    android_at = patched.index("android {")
    assert android_at < patched.index("packagingOptions {") < patched.index("defaultConfig")
    assert "pickFirst 'lib/*/libc++_shared.so'" in patched


def test_gradle_properties_replace_and_scale_memory():
    normal = GradlePropertiesPatch(large=False).apply(GRADLE_PROPERTIES)
    large = GradlePropertiesPatch(large=True).apply(GRADLE_PROPERTIES)
    assert "org.gradle.jvmargs=-Xmx2048m" in normal
    assert "-Xmx1536m" not in normal
    assert "org.gradle.jvmargs=-Xmx4096m" in large
    assert normal.count("android.useAndroidX=") == 1
    assert "android.enableJetifier=true" in normal
    assert normal.startswith("# Project-wide Gradle settings.")


def test_splash_config_merges_into_existing_json():
    patched = json.loads(SplashConfigPatch("#ff0000", 3000).apply(CAPACITOR_CONFIG))
    assert patched["appId"] == "com.widget.app"
    splash = patched["plugins"]["SplashScreen"]
    assert splash["backgroundColor"] == "#ff0000"
    assert splash["launchShowDuration"] == 3000
    assert splash["androidScaleType"] == "CENTER_CROP"


def test_minify_turns_on_release_shrinking():
    patched = MinifyPatch().apply(APP_BUILD_GRADLE)
    release = patched[patched.index("release {") :]
    assert release.index("minifyEnabled true") < release.index("proguardFiles")
    assert "shrinkResources true" in release
    assert "minifyEnabled false" not in patched


def test_minify_adds_build_types_when_missing():
    patched = MinifyPatch().apply("android {\n    namespace 'x'\n}\n")
    assert "buildTypes {" in patched and "minifyEnabled true" in patched


def test_build_script_drops_chained_type_check():
    patched = json.loads(BuildScriptPatch().apply(PACKAGE_JSON))
    assert patched["scripts"]["build"] == "vite build"
    assert patched["scripts"]["dev"] == "vite"


def test_build_script_without_type_check_untouched():
    content = json.dumps({"scripts": {"build": "react-scripts build"}})
    assert not BuildScriptPatch().applies(content)
    assert BuildScriptPatch().apply(content) == content


def test_tsconfig_relaxes_strict_failures():
    patched = TsconfigPatch().apply(TSCONFIG)
    assert "true" not in patched
    assert "// comments are allowed" in patched


def test_sdk_levels_and_compile_sdk_bump():
    patched = SdkLevelPatch(24, 35).apply(VARIABLES_GRADLE)
    assert "minSdkVersion = 24" in patched
    assert "targetSdkVersion = 35" in patched
    assert "compileSdkVersion = 35" in patched


def test_sdk_levels_in_app_gradle_literals():
    patched = SdkLevelPatch(23, 33).apply("minSdkVersion 21\ntargetSdkVersion 30\ncompileSdkVersion 34\n")
    assert patched == "minSdkVersion 23\ntargetSdkVersion 33\ncompileSdkVersion 34\n"


def test_signing_config_wired_into_release():
    patched = SigningPatch("release.keystore", "key", "secret").apply(APP_BUILD_GRADLE)
    assert patched.index("signingConfigs {") < patched.index("buildTypes {")
    assert 'storeFile file("release.keystore")' in patched
    build_types = patched[patched.index("buildTypes {") :]
    assert "signingConfig signingConfigs.release" in build_types
