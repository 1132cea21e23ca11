"""
Build driver: invokes `xcodebuild` for one (package, product, flavor) across
every destination platform of the product.
"""

from collections.abc import Callable, Iterable
from pathlib import Path
import shutil
import subprocess

from pyvider.telemetry import logger

from .config import Settings
from .exceptions import BuildError, ToolchainError
from .models import BuildFlavor, PackageSource, Product

PLATFORM_DESTINATIONS: dict[str, tuple[str, ...]] = {
    "iOS(.v15)": ("iOS", "iOS Simulator"),
    "macOS(.v11)": ("macOS",),
    "tvOS(.v15)": ("tvOS", "tvOS Simulator"),
    "macCatalyst(.v15)": ("macOS,variant=Mac Catalyst",),
}

SDK_FOLDER_NAMES: dict[str, str] = {
    "iOS": "iphoneos",
    "iOS Simulator": "iphonesimulator",
    "macOS": "macosx",
    "macOS,variant=Mac Catalyst": "maccatalyst",
    "tvOS": "appletvos",
    "tvOS Simulator": "appletvsimulator",
}

GENERATED_TARGET_PREFIX = ".build/"

Runner = Callable[..., str]


def run_tool(
    command: list[str],
    cwd: Path | str | None = None,
    timeout: float | None = None,
) -> str:
    """Runs an external tool, raising ToolchainError on failure or timeout."""
    logger.info(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            cwd=cwd,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise ToolchainError(
            f"Command timed out after {timeout}s.\n  Command: {' '.join(command)}",
            command=command,
            stdout=e.stdout if isinstance(e.stdout, str) else "",
            stderr=e.stderr if isinstance(e.stderr, str) else "",
        ) from e
    except OSError as e:
        raise ToolchainError(
            f"Could not run {command[0]}: {e}", command=command
        ) from e

    if result.returncode != 0:
        error_message = (
            f"Command failed with exit code {result.returncode}.\n"
            f"  Command: {' '.join(command)}\n"
            f"  Stdout:\n{result.stdout.strip()}\n"
            f"  Stderr:\n{result.stderr.strip()}"
        )
        raise ToolchainError(
            error_message, command=command, stdout=result.stdout, stderr=result.stderr
        )
    if result.stderr:
        logger.debug("Command stderr", output=result.stderr.strip())
    return result.stdout.strip()


def build_platforms_for_product(product: Product, platform: str | None = None) -> list[str]:
    platforms = [
        destination
        for declared in product.platforms
        for destination in PLATFORM_DESTINATIONS.get(declared, ())
    ]
    if platform:
        platforms = [p for p in platforms if p == platform]
    return platforms


def sdk_folder_for_platform(platform: str) -> str:
    try:
        return SDK_FOLDER_NAMES[platform]
    except KeyError as e:
        raise BuildError(f"Unknown build platform: {platform}") from e


def staging_root(package: PackageSource, product: Product) -> Path:
    """Directory holding the generated Package.swift and staged target sources."""
    return package.build_path / ".build" / "source" / product.name


def package_swift_path(package: PackageSource, product: Product) -> Path:
    return staging_root(package, product) / "Package.swift"


def derived_data_path(
    package: PackageSource, product: Product, flavor: BuildFlavor
) -> Path:
    return package.build_path / ".build" / flavor.dirname / product.name


def product_artifacts_path(
    package: PackageSource, product: Product, flavor: BuildFlavor, platform: str
) -> Path:
    return (
        derived_data_path(package, product, flavor)
        / "Build"
        / "Products"
        / f"{flavor.value}-{sdk_folder_for_platform(platform)}"
    )


def product_framework_path(
    package: PackageSource, product: Product, flavor: BuildFlavor, platform: str
) -> Path:
    return (
        product_artifacts_path(package, product, flavor, platform)
        / "PackageFrameworks"
        / f"{product.name}.framework"
    )


def product_dsym_path(
    package: PackageSource, product: Product, flavor: BuildFlavor, platform: str
) -> Path:
    return (
        product_artifacts_path(package, product, flavor, platform)
        / f"{product.name}.framework.dSYM"
    )


class BuildDriver:
    def __init__(self, settings: Settings, runner: Runner = run_tool) -> None:
        self.settings = settings
        self.runner = runner

    def _prefix_maps(
        self, package: PackageSource, product: Product
    ) -> tuple[list[str], list[str]]:
        """
        Clang applies the last matching `-fdebug-prefix-map`, so the repository
        catch-all goes first and the per-target staging maps go last.
        """
        prefix = self.settings.canonical_source_prefix
        repo_root = self.settings.repository_root
        c_maps = [f"-fdebug-prefix-map={repo_root}={prefix}"]
        swift_maps = [f"-debug-prefix-map {repo_root}={prefix}"]

        base = staging_root(package, product)
        for target in product.targets:
            if target.is_binary or target.path.startswith(GENERATED_TARGET_PREFIX):
                continue
            staged = base / target.name
            canonical = f"{prefix}/packages/{package.name}/{target.path.strip('/')}"
            c_maps.append(f"-fdebug-prefix-map={staged}/={canonical}/")
            swift_maps.append(f"-debug-prefix-map {staged}/={canonical}/")
        return c_maps, swift_maps

    def xcodebuild_args(
        self,
        package: PackageSource,
        product: Product,
        flavor: BuildFlavor,
        platform: str,
        extra_include_dirs: Iterable[Path] = (),
    ) -> list[str]:
        c_maps, swift_maps = self._prefix_maps(package, product)
        include_flags = [f"-I{path}" for path in extra_include_dirs]
        c_flags = " ".join(["$(inherited)", *c_maps, *include_flags])

        args = [
            "-scheme",
            package.name,
            "-destination",
            f"generic/platform={platform}",
            "-derivedDataPath",
            str(derived_data_path(package, product, flavor)),
            "-configuration",
            flavor.value,
            "SKIP_INSTALL=NO",
        ]
        if product.contains_swift:
            args.append("BUILD_LIBRARY_FOR_DISTRIBUTION=YES")
        args.extend(
            [
                "DEBUG_INFORMATION_FORMAT=dwarf-with-dsym",
                f"OTHER_CFLAGS={c_flags}",
                f"OTHER_CPLUSPLUSFLAGS={c_flags}",
            ]
        )
        if product.contains_swift:
            xcc_maps = [f"-Xcc {m}" for m in c_maps]
            args.append(
                "OTHER_SWIFT_FLAGS=" + " ".join(["$(inherited)", *swift_maps, *xcc_maps])
            )
        args.append("build")
        return args

    def build(
        self,
        package: PackageSource,
        product: Product,
        flavor: BuildFlavor,
        platform: str | None = None,
        extra_include_dirs: Iterable[Path] = (),
    ) -> list[str]:
        """Builds every destination platform; returns the platforms built."""
        manifest = package_swift_path(package, product)
        if not manifest.exists():
            raise BuildError(
                f"No Package.swift found for {package.name}/{product.name} at {manifest}"
            )

        platforms = build_platforms_for_product(product, platform)
        if not platforms:
            raise BuildError(
                f"No build platforms found for product {product.name} "
                f"in package {package.name}"
            )

        include_dirs = list(extra_include_dirs)
        for build_platform in platforms:
            logger.info(
                f"Building {package.name}/{product.name} for {build_platform} "
                f"({flavor.dirname})"
            )
            args = self.xcodebuild_args(
                package, product, flavor, build_platform, include_dirs
            )
            self.runner(
                ["xcodebuild", *args],
                cwd=manifest.parent,
                timeout=self.settings.build_timeout,
            )
        return platforms

    def clean(self, package: PackageSource, product: Product) -> None:
        for flavor in BuildFlavor:
            path = derived_data_path(package, product, flavor)
            if path.exists():
                logger.info(f"Cleaning build folder {path}")
                shutil.rmtree(path)
