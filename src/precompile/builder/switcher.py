"""
Flavor switcher for a consumer bundle directory.

Layout:

    <dir>/<Name>.xcframework -> artifacts/<Name>-<flavor>.xcframework
    <dir>/artifacts/<Name>-debug.xcframework
    <dir>/artifacts/<Name>-release.xcframework
    <dir>/.last_build_configuration
"""

from collections.abc import Mapping
import os
from pathlib import Path

from attrs import define, field
from pyvider.telemetry import logger

from .exceptions import BuildError
from .frameworks import framework_path
from .models import BuildFlavor, PackageSource
from .rendering import get_template_env, write_if_changed

MARKER_FILENAME = ".last_build_configuration"
ARTIFACTS_DIRNAME = "artifacts"
SWITCH_SCRIPT_NAME = "switch-flavor.sh"
SWITCH_SCRIPT_TEMPLATE = "switch.sh.j2"


@define(slots=True)
class SwitchResult:
    flavor: BuildFlavor
    fast_path: bool = False
    switched: list[str] = field(factory=list)
    skipped: list[str] = field(factory=list)


def marker_path(bundle_dir: Path) -> Path:
    return bundle_dir / MARKER_FILENAME


def read_marker(bundle_dir: Path) -> BuildFlavor | None:
    try:
        return BuildFlavor.parse(marker_path(bundle_dir).read_text())
    except (OSError, ValueError):
        return None


def variant_path(bundle_dir: Path, name: str, flavor: BuildFlavor) -> Path:
    return bundle_dir / ARTIFACTS_DIRNAME / f"{name}-{flavor.dirname}.xcframework"


def flavor_from_environment(environ: Mapping[str, str] | None = None) -> BuildFlavor:
    """Debug when CONFIGURATION is Debug or the preprocessor defines carry DEBUG=1."""
    env = os.environ if environ is None else environ
    if env.get("CONFIGURATION", "").strip().lower() == "debug":
        return BuildFlavor.DEBUG
    if "DEBUG=1" in env.get("GCC_PREPROCESSOR_DEFINITIONS", "").split():
        return BuildFlavor.DEBUG
    return BuildFlavor.RELEASE


def _replace_symlink(link: Path, target: str) -> None:
    temporary = link.with_name(f".{link.name}.{os.getpid()}.tmp")
    if temporary.is_symlink() or temporary.exists():
        temporary.unlink()
    temporary.symlink_to(target)
    os.replace(temporary, link)


class FlavorSwitcher:
    def __init__(self, bundle_dir: Path) -> None:
        self.bundle_dir = bundle_dir

    def switch(self, flavor: BuildFlavor) -> SwitchResult:
        if read_marker(self.bundle_dir) is flavor:
            return SwitchResult(flavor=flavor, fast_path=True)

        result = SwitchResult(flavor=flavor)
        for link in sorted(self.bundle_dir.glob("*.xcframework")):
            if not link.is_symlink():
                continue
            name = link.name.removesuffix(".xcframework")
            variant = variant_path(self.bundle_dir, name, flavor)
            if not variant.exists():
                logger.warning(
                    f"No {flavor.dirname} variant of {name}, leaving it as is",
                    expected=str(variant),
                )
                result.skipped.append(name)
                continue
            target = os.path.relpath(variant, self.bundle_dir)
            if os.readlink(link) != target:
                _replace_symlink(link, target)
            result.switched.append(name)

        marker_path(self.bundle_dir).write_text(flavor.dirname)
        logger.info(
            f"Switched {len(result.switched)} xcframework(s) in {self.bundle_dir} "
            f"to {flavor.dirname}"
        )
        return result


def install_switchable_bundles(
    bundle_dir: Path,
    package: PackageSource,
    flavor: BuildFlavor,
    products: list[str] | None = None,
    command: str = "precompile",
) -> list[str]:
    """
    Links both composed flavors of each product into `bundle_dir`, activates
    `flavor` and writes the switch script. Returns the installed products.
    """
    names = products or [p.name for p in package.products]
    unknown = [n for n in names if package.product_named(n) is None]
    if unknown:
        raise BuildError(f"Package {package.name} has no product(s): {', '.join(unknown)}")

    artifacts_dir = bundle_dir / ARTIFACTS_DIRNAME
    artifacts_dir.mkdir(parents=True, exist_ok=True)

    installed = []
    for name in names:
        available = []
        for each in BuildFlavor:
            composed = framework_path(package.build_path, name, each)
            if not composed.exists():
                continue
            link = variant_path(bundle_dir, name, each)
            if link.is_symlink() and os.readlink(link) == str(composed):
                available.append(each)
                continue
            _replace_symlink(link, str(composed))
            available.append(each)
        if not available:
            logger.warning(f"No composed xcframework for {package.name}/{name}, skipping")
            continue

        active = flavor if flavor in available else available[0]
        _replace_symlink(
            bundle_dir / f"{name}.xcframework",
            os.path.relpath(variant_path(bundle_dir, name, active), bundle_dir),
        )
        installed.append(name)

    if installed:
        marker_path(bundle_dir).unlink(missing_ok=True)
        FlavorSwitcher(bundle_dir).switch(flavor)
    write_switch_script(bundle_dir, command)
    return installed


def render_switch_script(bundle_dir: Path, command: str = "precompile") -> str:
    env = get_template_env()
    return env.get_template(SWITCH_SCRIPT_TEMPLATE).render(
        bundle_dir=str(bundle_dir), command=command, marker=MARKER_FILENAME
    )


def write_switch_script(bundle_dir: Path, command: str = "precompile") -> Path:
    script = bundle_dir / SWITCH_SCRIPT_NAME
    write_if_changed(script, render_switch_script(bundle_dir, command))
    script.chmod(0o755)
    return script
