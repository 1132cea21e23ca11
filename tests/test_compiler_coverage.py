"""Coverage tests for the build driver and the external tool runner."""

from pathlib import Path
import subprocess
from typing import Any
from unittest.mock import MagicMock

import pytest
from pytest import MonkeyPatch

from precompile.builder.compiler import (
    BuildDriver,
    build_platforms_for_product,
    derived_data_path,
    package_swift_path,
    product_dsym_path,
    product_framework_path,
    run_tool,
    sdk_folder_for_platform,
)
from precompile.builder.config import Settings
from precompile.builder.exceptions import BuildError, ToolchainError
from precompile.builder.models import BuildFlavor, Product, Target, TargetKind

from conftest import make_source


def test_build_platforms_for_product(tmp_path: Path) -> None:
    _, product = make_source(tmp_path, platforms=("iOS(.v15)", "macCatalyst(.v15)", "watchOS(.v9)"))
    assert build_platforms_for_product(product) == [
        "iOS",
        "iOS Simulator",
        "macOS,variant=Mac Catalyst",
    ]
    assert build_platforms_for_product(product, "iOS Simulator") == ["iOS Simulator"]
    assert build_platforms_for_product(product, "tvOS") == []


def test_unknown_sdk_folder() -> None:
    assert sdk_folder_for_platform("iOS Simulator") == "iphonesimulator"
    with pytest.raises(BuildError, match="Unknown build platform: visionOS"):
        sdk_folder_for_platform("visionOS")


def test_product_paths(tmp_path: Path) -> None:
    package, product = make_source(tmp_path)
    products = tmp_path / "build" / "lib" / ".build" / "release" / "Lib" / "Build" / "Products"
    assert derived_data_path(package, product, BuildFlavor.RELEASE) == (
        tmp_path / "build" / "lib" / ".build" / "release" / "Lib"
    )
    assert product_framework_path(package, product, BuildFlavor.RELEASE, "iOS") == (
        products / "Release-iphoneos" / "PackageFrameworks" / "Lib.framework"
    )
    assert product_dsym_path(package, product, BuildFlavor.RELEASE, "iOS Simulator") == (
        products / "Release-iphonesimulator" / "Lib.framework.dSYM"
    )


def test_prefix_maps_put_catch_all_first(settings: Settings, tmp_path: Path) -> None:
    package, product = make_source(tmp_path)
    args = BuildDriver(settings).xcodebuild_args(package, product, BuildFlavor.DEBUG, "iOS")

    c_flags = next(a for a in args if a.startswith("OTHER_CFLAGS="))
    staged = package.build_path / ".build" / "source" / "Lib" / "Lib_objc"
    catch_all = f"-fdebug-prefix-map={tmp_path}=/precompile-src"
    specific = f"-fdebug-prefix-map={staged}/=/precompile-src/packages/lib/ios/objc/"
    assert c_flags.startswith("OTHER_CFLAGS=$(inherited) ")
    assert c_flags.index(catch_all) < c_flags.index(specific)
    assert f"OTHER_CPLUSPLUSFLAGS={c_flags.split('=', 1)[1]}" in args
    assert not any(a.startswith("OTHER_SWIFT_FLAGS=") for a in args)
    assert "BUILD_LIBRARY_FOR_DISTRIBUTION=YES" not in args
    assert args[:4] == ["-scheme", "lib", "-destination", "generic/platform=iOS"]
    assert args[-1] == "build"
    assert "DEBUG_INFORMATION_FORMAT=dwarf-with-dsym" in args


def test_swift_products_get_swift_flags(settings: Settings, tmp_path: Path) -> None:
    package, product = make_source(tmp_path, kinds=(TargetKind.OBJC, TargetKind.SWIFT))
    args = BuildDriver(settings).xcodebuild_args(
        package, product, BuildFlavor.RELEASE, "iOS", [tmp_path / "hermes" / "include"]
    )

    assert "BUILD_LIBRARY_FOR_DISTRIBUTION=YES" in args
    swift_flags = next(a for a in args if a.startswith("OTHER_SWIFT_FLAGS="))
    assert f"-debug-prefix-map {tmp_path}=/precompile-src" in swift_flags
    assert f"-Xcc -fdebug-prefix-map={tmp_path}=/precompile-src" in swift_flags
    c_flags = next(a for a in args if a.startswith("OTHER_CFLAGS="))
    assert c_flags.endswith(f"-I{tmp_path / 'hermes' / 'include'}")


def test_generated_and_binary_targets_get_no_staging_map(
    settings: Settings, tmp_path: Path
) -> None:
    package, _ = make_source(tmp_path)
    product = Product(
        name="Lib",
        platforms=("iOS(.v15)",),
        targets=(
            Target(name="Gen", kind=TargetKind.OBJC, path=".build/generated/ios"),
            Target(name="Vendored", kind=TargetKind.FRAMEWORK, path="Frameworks/V.xcframework"),
        ),
    )
    args = BuildDriver(settings).xcodebuild_args(package, product, BuildFlavor.DEBUG, "iOS")
    c_flags = next(a for a in args if a.startswith("OTHER_CFLAGS="))
    assert c_flags.count("-fdebug-prefix-map=") == 1


def test_build_runs_once_per_platform(settings: Settings, tmp_path: Path) -> None:
    package, product = make_source(tmp_path)
    manifest = package_swift_path(package, product)
    manifest.parent.mkdir(parents=True)
    manifest.write_text("// swift-tools-version: 5.9\n")
    runner = MagicMock(return_value="")

    platforms = BuildDriver(settings, runner=runner).build(package, product, BuildFlavor.DEBUG)

    assert platforms == ["iOS", "iOS Simulator"]
    assert runner.call_count == 2
    for call, platform in zip(runner.call_args_list, platforms):
        command = call.args[0]
        assert command[0] == "xcodebuild"
        assert f"generic/platform={platform}" in command
        assert call.kwargs == {"cwd": manifest.parent, "timeout": settings.build_timeout}


def test_build_requires_manifest_and_platforms(settings: Settings, tmp_path: Path) -> None:
    package, product = make_source(tmp_path)
    driver = BuildDriver(settings, runner=MagicMock())
    with pytest.raises(BuildError, match="No Package.swift found for lib/Lib"):
        driver.build(package, product, BuildFlavor.DEBUG)

    manifest = package_swift_path(package, product)
    manifest.parent.mkdir(parents=True)
    manifest.write_text("")
    with pytest.raises(BuildError, match="No build platforms found for product Lib"):
        driver.build(package, product, BuildFlavor.DEBUG, platform="tvOS")


def test_clean_removes_both_flavors(settings: Settings, tmp_path: Path) -> None:
    package, product = make_source(tmp_path)
    for flavor in BuildFlavor:
        derived_data_path(package, product, flavor).mkdir(parents=True)
    BuildDriver(settings).clean(package, product)
    assert not any(derived_data_path(package, product, f).exists() for f in BuildFlavor)


def test_run_tool_returns_stripped_stdout(monkeypatch: MonkeyPatch) -> None:
    def mock_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        assert kwargs["timeout"] == 5
        return subprocess.CompletedProcess(args=args, returncode=0, stdout=" ok \n", stderr="")

    monkeypatch.setattr("subprocess.run", mock_run)
    assert run_tool(["echo", "ok"], timeout=5) == "ok"


def test_run_tool_non_zero_exit(monkeypatch: MonkeyPatch) -> None:
    def mock_run_fail(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(
            args=args, returncode=65, stdout="", stderr="** BUILD FAILED **"
        )

    monkeypatch.setattr("subprocess.run", mock_run_fail)
    with pytest.raises(ToolchainError, match="exit code 65") as exc_info:
        run_tool(["xcodebuild", "build"])
    assert exc_info.value.stderr == "** BUILD FAILED **"
    assert exc_info.value.command == ["xcodebuild", "build"]


def test_run_tool_timeout(monkeypatch: MonkeyPatch) -> None:
    def mock_run_timeout(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise subprocess.TimeoutExpired(cmd=args[0], timeout=kwargs["timeout"])

    monkeypatch.setattr("subprocess.run", mock_run_timeout)
    with pytest.raises(ToolchainError, match="timed out after 1s"):
        run_tool(["dwarfdump", "--uuid", "x"], timeout=1)


def test_run_tool_missing_executable(monkeypatch: MonkeyPatch) -> None:
    def mock_run_missing(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError("No such file or directory: 'xcrun'")

    monkeypatch.setattr("subprocess.run", mock_run_missing)
    with pytest.raises(ToolchainError, match="Could not run xcrun"):
        run_tool(["xcrun", "clang"])
