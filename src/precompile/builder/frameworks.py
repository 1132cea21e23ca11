"""
Framework composer: merges the per-platform frameworks of one product into an
xcframework and keeps their dSYMs next to it.
"""

from pathlib import Path
import shutil

from pyvider.telemetry import logger

from .compiler import (
    Runner,
    build_platforms_for_product,
    product_dsym_path,
    product_framework_path,
    run_tool,
    sdk_folder_for_platform,
)
from .exceptions import CompositionError
from .models import BuildFlavor, PackageSource, Product


def frameworks_output_path(build_path: Path, flavor: BuildFlavor) -> Path:
    return build_path / "output" / flavor.dirname / "frameworks"


def framework_path(build_path: Path, product_name: str, flavor: BuildFlavor) -> Path:
    """`<build>/output/<flavor>/frameworks/<Product>/<Product>.xcframework`"""
    return (
        frameworks_output_path(build_path, flavor)
        / product_name
        / f"{product_name}.xcframework"
    )


def dsyms_path(build_path: Path, product_name: str, flavor: BuildFlavor) -> Path:
    return frameworks_output_path(build_path, flavor) / product_name / "dSYMs"


def find_headers_dir(xcframework_path: Path) -> Path | None:
    """First `<slice>/<Name>.framework/Headers` of a bundle; headers are slice-independent."""
    if not xcframework_path.is_dir():
        return None
    for slice_dir in sorted(p for p in xcframework_path.iterdir() if p.is_dir()):
        for framework in sorted(slice_dir.glob("*.framework")):
            headers = framework / "Headers"
            if headers.is_dir():
                return headers
    return None


class FrameworkComposer:
    def __init__(self, runner: Runner = run_tool, timeout: float | None = None) -> None:
        self.runner = runner
        self.timeout = timeout

    def compose(
        self,
        package: PackageSource,
        product: Product,
        flavor: BuildFlavor,
        platforms: list[str] | None = None,
        sign_identity: str | None = None,
        timestamp: bool = True,
    ) -> Path:
        platforms = platforms or build_platforms_for_product(product)
        output = framework_path(package.build_path, product.name, flavor)

        command = ["xcodebuild", "-create-xcframework"]
        dsyms: list[tuple[str, Path]] = []
        for platform in platforms:
            framework = product_framework_path(package, product, flavor, platform)
            if not framework.exists():
                raise CompositionError(
                    f"Built framework for {platform} not found at {framework}"
                )
            command.extend(["-framework", str(framework)])
            dsym = product_dsym_path(package, product, flavor, platform)
            if dsym.exists():
                command.extend(["-debug-symbols", str(dsym)])
                dsyms.append((platform, dsym))
            else:
                logger.warning(
                    "No dSYM produced for platform",
                    product=product.name,
                    platform=platform,
                )
        command.extend(["-output", str(output)])

        if output.exists():
            shutil.rmtree(output)
        output.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Composing {output.name} ({flavor.dirname})")
        self.runner(command, timeout=self.timeout)

        self._copy_dsyms(package, product, flavor, dsyms)
        if sign_identity:
            self.sign(output, sign_identity, timestamp)
        return output

    def _copy_dsyms(
        self,
        package: PackageSource,
        product: Product,
        flavor: BuildFlavor,
        dsyms: list[tuple[str, Path]],
    ) -> None:
        root = dsyms_path(package.build_path, product.name, flavor)
        if root.exists():
            shutil.rmtree(root)
        for platform, dsym in dsyms:
            destination = root / f"{flavor.value}-{sdk_folder_for_platform(platform)}"
            destination.mkdir(parents=True, exist_ok=True)
            shutil.copytree(dsym, destination / dsym.name, symlinks=True)

    def sign(self, xcframework: Path, identity: str, timestamp: bool = True) -> None:
        logger.info(f"Signing {xcframework.name} with identity {identity}")
        command = ["codesign", "--force", "--sign", identity]
        command.append("--timestamp" if timestamp else "--timestamp=none")
        command.append(str(xcframework))
        self.runner(command, timeout=self.timeout)
