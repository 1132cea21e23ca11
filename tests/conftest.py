"""Pytest fixtures for the entire precompile-builder test suite."""

import json
from pathlib import Path
from typing import Any, Callable
import plistlib

import pytest

from precompile.builder.config import Settings
from precompile.builder.context import BuildContext
from precompile.builder.frameworks import framework_path
from precompile.builder.models import BuildFlavor, PackageSource, Product, Target, TargetKind

MACHO_64 = bytes.fromhex("cffaedfe") + b"\x00" * 28

PackageFactory = Callable[..., Path]


def objc_product(
    name: str,
    external: list[str] | None = None,
    dependencies: list[str] | None = None,
    platforms: list[str] | None = None,
    **target_overrides: Any,
) -> dict[str, Any]:
    """A one-target ObjC product reading its sources from `ios/`."""
    target = {
        "type": "objc",
        "name": f"{name}_ios_objc",
        "path": "ios",
        "dependencies": dependencies or [],
    }
    target.update(target_overrides)
    return {
        "name": name,
        "platforms": platforms or ["iOS(.v15)"],
        "externalDependencies": external or [],
        "targets": [target],
    }


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    packages_dir = tmp_path / "packages"
    packages_dir.mkdir()
    return Settings(
        packages_dir=packages_dir,
        build_dir=tmp_path / "build",
        cache_dir=tmp_path / "cache",
        repository_root=tmp_path,
        versions={"react": "0.81.0", "hermes": "0.14.0"},
        react_native_version="0.81.0",
    )


@pytest.fixture
def make_package(settings: Settings) -> PackageFactory:
    """Writes `package.json`, `spm.config.json` and a small `ios/` source tree."""

    def _make_package(
        name: str,
        products: list[dict[str, Any]],
        version: str = "1.0.0",
        subdir: str | None = None,
    ) -> Path:
        root = settings.packages_dir / (subdir or name)
        (root / "ios").mkdir(parents=True, exist_ok=True)
        (root / "package.json").write_text(json.dumps({"name": name, "version": version}))
        (root / "spm.config.json").write_text(json.dumps({"products": products}))
        stem = name.replace("-", "_").replace("@", "").replace("/", "_")
        (root / "ios" / f"{stem}.h").write_text(f"// {name}\n")
        (root / "ios" / f"{stem}.m").write_text(f'#import "{stem}.h"\n')
        return root

    return _make_package


@pytest.fixture
def context(settings: Settings) -> BuildContext:
    return BuildContext(settings)


def write_xcframework(
    path: Path,
    name: str,
    slices: list[tuple[str, str, str | None]] | None = None,
    swift: bool = False,
) -> Path:
    """
    Writes a structurally valid xcframework. `slices` holds
    (LibraryIdentifier, SupportedPlatform, SupportedPlatformVariant).
    """
    slices = slices or [("ios-arm64", "ios", None)]
    libraries = []
    for slice_id, platform, variant in slices:
        framework = path / slice_id / f"{name}.framework"
        (framework / "Headers").mkdir(parents=True)
        (framework / "Headers" / f"{name}.h").write_text(f"// {name}\n")
        (framework / "Modules").mkdir()
        (framework / "Modules" / "module.modulemap").write_text(
            f"framework module {name} {{\n  umbrella header \"{name}.h\"\n}}\n"
        )
        if swift:
            (framework / "Modules" / f"{name}.swiftmodule").mkdir()
        (framework / name).write_bytes(MACHO_64)
        library = {
            "LibraryIdentifier": slice_id,
            "LibraryPath": f"{name}.framework",
            "BinaryPath": f"{name}.framework/{name}",
            "SupportedArchitectures": ["arm64"],
            "SupportedPlatform": platform,
        }
        if variant:
            library["SupportedPlatformVariant"] = variant
        libraries.append(library)
    with (path / "Info.plist").open("wb") as f:
        plistlib.dump(
            {
                "AvailableLibraries": libraries,
                "CFBundlePackageType": "XFWK",
                "XCFrameworkFormatVersion": "1.0",
            },
            f,
        )
    return path


def write_dsym(path: Path, name: str) -> Path:
    dsym = path / f"{name}.framework.dSYM"
    dwarf = dsym / "Contents" / "Resources" / "DWARF"
    dwarf.mkdir(parents=True)
    (dwarf / name).write_bytes(MACHO_64)
    return dsym


@pytest.fixture
def mark_built(settings: Settings) -> Callable[..., None]:
    """Creates the composed xcframeworks of a product so it counts as built."""

    def _mark_built(
        package: str, product: str, flavors: tuple[BuildFlavor, ...] = tuple(BuildFlavor)
    ) -> None:
        for flavor in flavors:
            write_xcframework(
                framework_path(settings.build_dir / package, product, flavor), product
            )

    return _mark_built


def make_source(
    tmp_path: Path,
    kinds: tuple[TargetKind, ...] = (TargetKind.OBJC,),
    platforms: tuple[str, ...] = ("iOS(.v15)",),
) -> tuple[PackageSource, Product]:
    """A `lib` package with one `Lib` product holding a target per kind."""
    targets = tuple(
        Target(name=f"Lib_{kind.value}", kind=kind, path=f"ios/{kind.value}") for kind in kinds
    )
    product = Product(name="Lib", platforms=platforms, targets=targets)
    package = PackageSource(
        name="lib",
        version="1.0.0",
        path=tmp_path / "packages" / "lib",
        build_path=tmp_path / "build" / "lib",
        products=(product,),
    )
    return package, product
