"""Tests for Package.swift generation."""

from pathlib import Path
from typing import Callable

import pytest

from conftest import PackageFactory, objc_product, write_xcframework
from precompile.builder.compiler import package_swift_path
from precompile.builder.context import BuildContext
from precompile.builder.exceptions import ConfigurationError, DependencyError
from precompile.builder.manifest import (
    BinaryTargetDecl,
    Define,
    HeaderSearchPath,
    ManifestGenerator,
    SourceTargetDecl,
    TargetDependencyDecl,
    UnsafeFlags,
    UpcomingFeature,
    render_manifest,
    write_manifest,
)
from precompile.builder.models import NEW_ARCH_DEFINE, BuildFlavor

DEBUG = BuildFlavor.DEBUG


def _generate(context: BuildContext, package: str, product: str, flavor=DEBUG):
    pkg = context.package(package)
    return ManifestGenerator(context).generate(pkg, pkg.product_named(product), flavor)


def _source_target(manifest) -> SourceTargetDecl:
    return next(t for t in manifest.targets if isinstance(t, SourceTargetDecl))


def test_objc_target_settings(make_package: PackageFactory, context: BuildContext) -> None:
    make_package("core", [objc_product("Core")])
    manifest = _generate(context, "core", "Core")

    assert manifest.name == "core"
    assert manifest.product_name == "Core"
    assert manifest.product_targets == ("Core_ios_objc",)
    target = _source_target(manifest)
    assert target.path == "Core_ios_objc"
    assert target.public_headers_path == "include"
    assert target.c_settings[:4] == (
        HeaderSearchPath("include"),
        HeaderSearchPath("include/Core"),
        Define(NEW_ARCH_DEFINE, "1"),
        UnsafeFlags(("-fmodules",)),
    )
    assert target.cxx_settings == target.c_settings

    text = render_manifest(manifest)
    assert text.startswith("// swift-tools-version: 5.9\n")
    assert ".iOS(.v15)" in text
    assert "type: .dynamic" in text
    assert 'targets: ["Core_ios_objc"]' in text
    assert '.define("RCT_NEW_ARCH_ENABLED", to: "1")' in text
    assert '.unsafeFlags(["-fmodules"])' in text
    assert "cxxLanguageStandard: .cxx20" in text


def test_public_headers_can_be_disabled(
    make_package: PackageFactory, context: BuildContext
) -> None:
    make_package("core", [objc_product("Core", publicHeaders=False)])
    target = _source_target(_generate(context, "core", "Core"))
    assert target.public_headers_path is None
    assert "publicHeadersPath" not in render_manifest(_generate(context, "core", "Core"))


def test_generation_is_deterministic(
    make_package: PackageFactory, context: BuildContext
) -> None:
    """TDD Contract: identical inputs produce byte-identical manifests and no rewrite."""
    make_package("core", [objc_product("Core", defines=["B=2", "A"])])
    pkg = context.package("core")
    path = package_swift_path(pkg, pkg.products[0])

    first = render_manifest(_generate(context, "core", "Core"))
    second = render_manifest(_generate(context, "core", "Core"))
    assert first == second

    assert write_manifest(_generate(context, "core", "Core"), path) is True
    mtime = path.stat().st_mtime_ns
    assert write_manifest(_generate(context, "core", "Core"), path) is False
    assert path.stat().st_mtime_ns == mtime
    assert path.read_text() == first


def test_sibling_product_becomes_binary_target(
    make_package: PackageFactory,
    context: BuildContext,
    mark_built: Callable[..., None],
) -> None:
    make_package("core", [objc_product("Core")])
    make_package(
        "image", [objc_product("Image", external=["core/Core"], dependencies=["Core"])]
    )
    mark_built("core", "Core")

    manifest = _generate(context, "image", "Image")

    binary = manifest.targets[0]
    assert isinstance(binary, BinaryTargetDecl)
    assert binary.name == "Core"
    assert binary.path == "../../../../core/output/debug/frameworks/Core/Core.xcframework"
    target = _source_target(manifest)
    assert target.dependencies == (TargetDependencyDecl("Core"),)

    headers = {
        s.configuration: s.flags
        for s in target.c_settings
        if isinstance(s, UnsafeFlags) and s.configuration
    }
    assert set(headers) == {"debug", "release"}
    assert headers["debug"][0] == "-I"
    assert headers["debug"][1].endswith("debug/frameworks/Core/Core.xcframework/ios-arm64/Core.framework/Headers")

    text = render_manifest(manifest)
    assert '.binaryTarget(\n            name: "Core",' in text
    assert ".when(configuration: .debug)" in text
    assert ".when(configuration: .release)" in text


def test_sibling_reference_by_qualified_name(
    make_package: PackageFactory,
    context: BuildContext,
    mark_built: Callable[..., None],
) -> None:
    make_package("core", [objc_product("Core")])
    make_package(
        "image",
        [objc_product("Image", external=["core/Core"], dependencies=["core/Core"])],
    )
    mark_built("core", "Core")
    target = _source_target(_generate(context, "image", "Image"))
    assert target.dependencies == (TargetDependencyDecl("Core"),)


def test_missing_sibling_binary_is_a_dependency_error(
    make_package: PackageFactory, context: BuildContext
) -> None:
    make_package("core", [objc_product("Core")])
    make_package("image", [objc_product("Image", external=["core/Core"])])
    with pytest.raises(DependencyError, match="Build core first"):
        _generate(context, "image", "Image")


def test_package_reference_adds_every_product(
    make_package: PackageFactory,
    context: BuildContext,
    mark_built: Callable[..., None],
) -> None:
    make_package("core", [objc_product("Core"), objc_product("CoreExtras")])
    make_package("image", [objc_product("Image", external=["core"])])
    mark_built("core", "Core")
    mark_built("core", "CoreExtras")

    manifest = _generate(context, "image", "Image")
    binaries = [t.name for t in manifest.targets if isinstance(t, BinaryTargetDecl)]
    assert binaries == ["Core", "CoreExtras"]


def test_unresolvable_target_dependency(
    make_package: PackageFactory, context: BuildContext
) -> None:
    make_package("core", [objc_product("Core", dependencies=["Nowhere"])])
    with pytest.raises(DependencyError, match="'Nowhere'"):
        _generate(context, "core", "Core")


def test_unresolvable_external_dependency(
    make_package: PackageFactory, context: BuildContext
) -> None:
    make_package("core", [objc_product("Core", external=["Nowhere"])])
    with pytest.raises(DependencyError, match="Nowhere"):
        _generate(context, "core", "Core")


def test_remote_package_products(make_package: PackageFactory, context: BuildContext) -> None:
    product = objc_product("Anim", dependencies=["Lottie"])
    product["spmPackages"] = [
        {
            "url": "https://github.com/airbnb/lottie-spm.git",
            "version": {"exact": "4.5.0"},
            "productName": "Lottie",
        }
    ]
    make_package("anim", [product])

    manifest = _generate(context, "anim", "Anim")

    assert _source_target(manifest).dependencies == (
        TargetDependencyDecl("Lottie", package="lottie-spm"),
    )
    text = render_manifest(manifest)
    assert '.package(url: "https://github.com/airbnb/lottie-spm.git", exact: "4.5.0")' in text
    assert '.product(name: "Lottie", package: "lottie-spm")' in text


def test_compiler_flags_are_substituted_and_split(
    make_package: PackageFactory, context: BuildContext
) -> None:
    make_package(
        "core",
        [
            objc_product(
                "Core",
                compilerFlags={
                    "common": ["-DCORE_VERSION=${PACKAGE_VERSION}", "-Wno-everything"],
                    "debug": ["-DRN_MINOR=${REACT_NATIVE_MINOR_VERSION}"],
                },
            )
        ],
        version="2.3.4",
    )

    debug = _source_target(_generate(context, "core", "Core", BuildFlavor.DEBUG))
    release = _source_target(_generate(context, "core", "Core", BuildFlavor.RELEASE))

    assert Define("CORE_VERSION", "2.3.4") in debug.c_settings
    assert Define("RN_MINOR", "81") in debug.c_settings
    assert UnsafeFlags(("-Wno-everything",)) in debug.c_settings
    assert Define("RN_MINOR", "81") not in release.c_settings


@pytest.mark.parametrize(
    "flag, message",
    [("-DX=${NOT_A_VARIABLE}", "Unknown placeholder"), ("-DX=${PACKAGE_VERSION", "Malformed")],
)
def test_bad_placeholders_are_configuration_errors(
    make_package: PackageFactory, context: BuildContext, flag: str, message: str
) -> None:
    make_package("core", [objc_product("Core", compilerFlags=[flag])])
    with pytest.raises(ConfigurationError, match=message):
        _generate(context, "core", "Core")


def test_package_version_placeholder_needs_a_version(
    make_package: PackageFactory, context: BuildContext
) -> None:
    make_package(
        "core", [objc_product("Core", compilerFlags=["-DV=${PACKAGE_VERSION}"])], version=""
    )
    with pytest.raises(ConfigurationError, match="no version"):
        _generate(context, "core", "Core")


def test_resources(make_package: PackageFactory, context: BuildContext) -> None:
    root = make_package(
        "core",
        [objc_product("Core", resources=["ios/*.bundle", {"path": "ios/fonts", "rule": "copy"}])],
    )
    (root / "ios" / "Assets.bundle").mkdir()
    (root / "ios" / "fonts").mkdir()

    target = _source_target(_generate(context, "core", "Core"))
    assert [(r.rule, r.path) for r in target.resources] == [
        ("process", "resources/Assets.bundle"),
        ("copy", "resources/fonts"),
    ]
    text = render_manifest(_generate(context, "core", "Core"))
    assert '.process("resources/Assets.bundle"),' in text
    assert '.copy("resources/fonts"),' in text


def test_empty_resource_glob_is_a_configuration_error(
    make_package: PackageFactory, context: BuildContext
) -> None:
    make_package("core", [objc_product("Core", resources=["ios/*.missing"])])
    with pytest.raises(ConfigurationError, match="Resource not found"):
        _generate(context, "core", "Core")


def test_linker_settings(make_package: PackageFactory, context: BuildContext) -> None:
    make_package(
        "core",
        [objc_product("Core", linkedFrameworks=["UIKit"], linkerFlags=["-ObjC"])],
    )
    text = render_manifest(_generate(context, "core", "Core"))
    assert '.linkedFramework("UIKit"),' in text
    assert '.unsafeFlags(["-ObjC"]),' in text


def test_include_directories_inside_dot_build_are_remapped(
    make_package: PackageFactory, context: BuildContext
) -> None:
    make_package(
        "core",
        [objc_product("Core", includeDirectories=["../.build/generated", "../common"])],
    )
    pkg = context.package("core")
    target = _source_target(_generate(context, "core", "Core"))
    include = next(
        s for s in target.c_settings if isinstance(s, UnsafeFlags) and "-I" in s.flags
    )
    assert include.flags == (
        "-I",
        str(pkg.build_path / "generated"),
        "-I",
        str(pkg.path / "common"),
    )


def test_swift_target_settings(make_package: PackageFactory, context: BuildContext) -> None:
    make_package("kit", [objc_product("Kit", type="swift")])
    manifest = _generate(context, "kit", "Kit")
    target = _source_target(manifest)
    assert target.public_headers_path is None
    assert target.swift_settings[:3] == (
        UpcomingFeature("LibraryEvolution"),
        Define(NEW_ARCH_DEFINE),
        UnsafeFlags(("-Xcc", "-fmodules")),
    )
    text = render_manifest(manifest)
    assert '.enableUpcomingFeature("LibraryEvolution"),' in text
    assert '.define("RCT_NEW_ARCH_ENABLED"),' in text


def test_swift_language_versions(make_package: PackageFactory, context: BuildContext) -> None:
    product = objc_product("Kit", type="swift")
    product["swiftLanguageVersions"] = ["5", "6"]
    make_package("kit", [product])
    text = render_manifest(_generate(context, "kit", "Kit"))
    assert 'swiftLanguageVersions: [.version("5"), .version("6")],' in text


def test_vendored_framework(make_package: PackageFactory, context: BuildContext) -> None:
    product = objc_product("Core", dependencies=["Vendored"])
    product["targets"].append({"type": "framework", "name": "Vendored", "path": "ios/Vendored.xcframework"})
    root = make_package("core", [product])

    with pytest.raises(DependencyError, match="Vendored"):
        _generate(context, "core", "Core")

    write_xcframework(root / "ios" / "Vendored.xcframework", "Vendored")
    manifest = _generate(context, "core", "Core")
    binary = manifest.targets[0]
    assert isinstance(binary, BinaryTargetDecl)
    assert binary.name == "Vendored"
    assert binary.path.endswith("packages/core/ios/Vendored.xcframework")
    assert _source_target(manifest).dependencies == (TargetDependencyDecl("Vendored"),)


def _write_react_cache(context: BuildContext) -> dict[BuildFlavor, Path]:
    cache = context.cache
    react = cache.lookup("React")
    roots = {}
    for flavor in BuildFlavor:
        framework = cache.framework_path(react, flavor)
        write_xcframework(framework, "React")
        overlay = cache.overlay_path(react, flavor)
        overlay.write_text(
            "version: 0\ncase-sensitive: false\nroots:\n"
            f"- name: {framework}/Headers\n  type: directory\n  contents: []\n"
        )
        roots[flavor] = framework
    return roots


def test_cache_dependency_must_be_present(
    make_package: PackageFactory, context: BuildContext
) -> None:
    make_package("core", [objc_product("Core", external=["React"], dependencies=["React"])])
    with pytest.raises(DependencyError, match="React binary"):
        _generate(context, "core", "Core")


def test_cache_dependency_binary_and_overlay_flags(
    make_package: PackageFactory, context: BuildContext
) -> None:
    make_package("core", [objc_product("Core", external=["React"], dependencies=["React"])])
    roots = _write_react_cache(context)

    manifest = _generate(context, "core", "Core")

    binary = manifest.targets[0]
    assert isinstance(binary, BinaryTargetDecl)
    assert binary.name == "React"
    assert binary.path.endswith("react/0.81.0/debug/React.xcframework")
    target = _source_target(manifest)
    assert target.dependencies == (TargetDependencyDecl("React"),)

    per_flavor = {
        s.configuration: s.flags
        for s in target.c_settings
        if isinstance(s, UnsafeFlags) and s.configuration
    }
    debug_flags = per_flavor["debug"]
    assert debug_flags[:2] == ("-ivfsoverlay", str(context.cache.overlay_path(context.cache.lookup("React"), DEBUG)))
    assert debug_flags[2:4] == ("-I", f"{roots[DEBUG]}/Headers")
    assert str((roots[DEBUG] / "Headers").resolve()) in debug_flags[4:]
    assert "release" in per_flavor


def test_product_level_cache_dependency_reaches_every_target(
    make_package: PackageFactory, context: BuildContext
) -> None:
    product = objc_product("Core", external=["React"])
    product["targets"].append({"type": "swift", "name": "Core_ios_swift", "path": "ios"})
    make_package("core", [product])
    _write_react_cache(context)
    overlay = str(context.cache.overlay_path(context.cache.lookup("React"), DEBUG))

    manifest = _generate(context, "core", "Core")

    objc, swift = manifest.targets[1:]
    assert objc.dependencies == ()
    debug_c = [
        s.flags for s in objc.c_settings
        if isinstance(s, UnsafeFlags) and s.configuration == "debug"
    ]
    assert debug_c and debug_c[-1][:2] == ("-ivfsoverlay", overlay)
    debug_swift = [
        s.flags for s in swift.swift_settings
        if isinstance(s, UnsafeFlags) and s.configuration == "debug"
    ]
    assert debug_swift and debug_swift[0][:4] == ("-Xcc", "-ivfsoverlay", "-Xcc", overlay)


def test_cache_dependency_flags_are_not_duplicated(
    make_package: PackageFactory, context: BuildContext
) -> None:
    make_package("core", [objc_product("Core", external=["React"], dependencies=["React"])])
    _write_react_cache(context)

    target = _source_target(_generate(context, "core", "Core"))

    debug_flags = [
        s.flags for s in target.c_settings
        if isinstance(s, UnsafeFlags) and s.configuration == "debug"
    ]
    assert len(debug_flags) == 1
    assert debug_flags[0].count("-ivfsoverlay") == 1
