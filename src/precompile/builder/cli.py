"""The `precompile` command-line interface."""

import importlib.metadata
from pathlib import Path
import sys

import click

from .compiler import SDK_FOLDER_NAMES
from .config import Settings
from .context import BuildContext
from .exceptions import BuildError, ConfigurationError, VerificationError
from .frameworks import dsyms_path, framework_path
from .headers import load_header_modules, prepare_stock_framework
from .models import BuildFlavor
from .packaging.orchestrator import BuildOptions, BuildOrchestrator
from .switcher import FlavorSwitcher, flavor_from_environment, install_switchable_bundles
from .verifier import PostBuildVerifier

try:
    __version__ = importlib.metadata.version("precompile-builder")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0-dev"

FLAVOR_CHOICE = click.Choice([f.value for f in BuildFlavor], case_sensitive=False)

manifest_option = click.option(
    "--manifest",
    "pyproject_toml_path",
    default=None,
    type=click.Path(exists=True, dir_okay=False, resolve_path=True),
    help="Path to a pyproject.toml with a [tool.precompile] section.",
)


def load_settings(pyproject_toml_path: str | None) -> Settings:
    """Explicit manifest, else ./pyproject.toml when it configures us, else defaults."""
    if pyproject_toml_path:
        return Settings.from_pyproject(Path(pyproject_toml_path))
    default = Path("pyproject.toml")
    if default.is_file():
        try:
            return Settings.from_pyproject(default)
        except ConfigurationError:
            pass
    return Settings.for_root(Path.cwd())


def _flavor(value: str | None) -> BuildFlavor | None:
    return BuildFlavor.parse(value) if value else None


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(
    __version__,
    "-V",
    "--version",
    prog_name="precompile",
    message="%(prog)s version %(version)s",
)
def cli() -> None:
    """Precompiled xcframework build orchestrator."""
    pass


@cli.command("build")
@click.argument("packages", nargs=-1)
@click.option("--flavor", type=FLAVOR_CHOICE, help="Build only this flavor (default: both).")
@click.option(
    "--platform",
    type=click.Choice(sorted(SDK_FOLDER_NAMES)),
    help="Build only this destination platform.",
)
@click.option("--product", help="Build only this product.")
@click.option("--clean", is_flag=True, help="Remove outputs, staging and derived data first.")
@click.option("--clean-cache", is_flag=True, help="Remove the artifact cache first.")
@click.option("--skip-generate", is_flag=True, help="Reuse the existing Package.swift.")
@click.option("--skip-artifacts", is_flag=True, help="Do not fetch missing cache artifacts.")
@click.option("--skip-build", is_flag=True, help="Do not run xcodebuild.")
@click.option("--skip-compose", is_flag=True, help="Do not create xcframeworks.")
@click.option("--skip-verify", is_flag=True, help="Do not verify the xcframeworks.")
@click.option("--sign", "sign_identity", help="Code signing identity for the xcframeworks.")
@click.option("--no-timestamp", is_flag=True, help="Sign without a secure timestamp.")
@click.option(
    "--timeout",
    "build_timeout",
    type=click.FloatRange(min=0, min_open=True),
    help="Seconds before an xcodebuild invocation is abandoned.",
)
@manifest_option
def build_command(
    packages: tuple[str, ...],
    flavor: str | None,
    platform: str | None,
    product: str | None,
    clean: bool,
    clean_cache: bool,
    skip_generate: bool,
    skip_artifacts: bool,
    skip_build: bool,
    skip_compose: bool,
    skip_verify: bool,
    sign_identity: str | None,
    no_timestamp: bool,
    build_timeout: float | None,
    pyproject_toml_path: str | None,
) -> None:
    """Builds xcframeworks for PACKAGES (all discovered packages when omitted)."""
    click.echo("🚀 Prebuilding packages...")
    try:
        settings = load_settings(pyproject_toml_path).with_overrides(
            build_timeout=build_timeout
        )
        selected = _flavor(flavor)
        options = BuildOptions(
            flavors=(selected,) if selected else tuple(BuildFlavor),
            platform=platform,
            product=product,
            clean=clean,
            clean_cache=clean_cache,
            skip_generate=skip_generate,
            skip_artifacts=skip_artifacts,
            skip_build=skip_build,
            skip_compose=skip_compose,
            skip_verify=skip_verify,
            sign_identity=sign_identity,
            timestamp=not no_timestamp,
        )
        summary = BuildOrchestrator(BuildContext(settings), options).run(list(packages))
    except BuildError as e:
        click.secho(f"❌ Prebuild Failed:\n{e}", fg="red", err=True)
        raise click.Abort() from e

    if summary.failed:
        click.secho(f"❌ {len(summary.errors)} step(s) failed.", fg="red", err=True)
        sys.exit(summary.exit_code)
    click.secho("✅ All units built successfully.", fg="green")


@cli.command("switch")
@click.option(
    "--dir",
    "bundle_dir",
    required=True,
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Directory holding the switchable xcframework links.",
)
@click.option(
    "--flavor",
    type=FLAVOR_CHOICE,
    help="Flavor to activate (default: derived from CONFIGURATION).",
)
def switch_command(bundle_dir: str, flavor: str | None) -> None:
    """Points every xcframework link in a directory at one flavor."""
    target = _flavor(flavor) or flavor_from_environment()
    result = FlavorSwitcher(Path(bundle_dir)).switch(target)
    if result.fast_path:
        click.echo(f"i️ Already using {target.dirname} xcframeworks.")
        return
    for name in result.skipped:
        click.secho(f"⚠️  No {target.dirname} variant of {name}, left unchanged.", fg="yellow")
    click.secho(
        f"✅ Switched {len(result.switched)} xcframework(s) to {target.dirname}.", fg="green"
    )


@cli.command("install")
@click.option(
    "--dir",
    "bundle_dir",
    required=True,
    type=click.Path(file_okay=False, resolve_path=True),
    help="Consumer directory to lay the bundles out in.",
)
@click.option("--package", "package_name", required=True, help="Package whose products to install.")
@click.option("--product", "products", multiple=True, help="Product to install (repeatable).")
@click.option("--flavor", type=FLAVOR_CHOICE, default="Debug", show_default=True)
@manifest_option
def install_command(
    bundle_dir: str,
    package_name: str,
    products: tuple[str, ...],
    flavor: str,
    pyproject_toml_path: str | None,
) -> None:
    """Lays out switchable debug/release xcframeworks and the switch script."""
    try:
        settings = load_settings(pyproject_toml_path)
        package = BuildContext(settings).package(package_name)
        installed = install_switchable_bundles(
            Path(bundle_dir), package, BuildFlavor.parse(flavor), list(products) or None
        )
    except BuildError as e:
        click.secho(f"❌ Install failed: {e}", fg="red", err=True)
        raise click.Abort() from e

    if not installed:
        click.secho("⚠️  No composed xcframeworks found to install.", fg="yellow")
        return
    click.secho(f"✅ Installed {', '.join(installed)} into {bundle_dir}", fg="green")


@cli.command("headers")
@click.argument(
    "xcframework",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
)
@click.option(
    "--source-root",
    required=True,
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Root of the source tree the stock headers come from.",
)
@click.option(
    "--modules",
    "modules_file",
    required=True,
    type=click.Path(exists=True, dir_okay=False, resolve_path=True),
    help="JSON file declaring the header modules.",
)
@click.option("--name", help="Bundle name (default: the xcframework's name).")
def headers_command(
    xcframework: str, source_root: str, modules_file: str, name: str | None
) -> None:
    """Prepares the VFS overlay template and header staging for a stock xcframework."""
    click.echo(f"🔧 Preparing header overlay for '{Path(xcframework).name}'...")
    try:
        modules = load_header_modules(Path(modules_file))
        template = prepare_stock_framework(
            Path(xcframework), Path(source_root), modules, name
        )
    except BuildError as e:
        click.secho(f"❌ Header preparation failed: {e}", fg="red", err=True)
        raise click.Abort() from e
    click.secho(f"✅ Overlay template written: {template}", fg="green")


@cli.command("verify")
@click.argument("package_name")
@click.argument("product_name")
@click.option("--flavor", type=FLAVOR_CHOICE, required=True)
@click.option("--check-signature", is_flag=True, help="Also run `codesign --verify`.")
@manifest_option
def verify_command(
    package_name: str,
    product_name: str,
    flavor: str,
    check_signature: bool,
    pyproject_toml_path: str | None,
) -> None:
    """Verifies a composed xcframework and its dSYMs."""
    build_flavor = BuildFlavor.parse(flavor)
    try:
        settings = load_settings(pyproject_toml_path)
        package = BuildContext(settings).package(package_name)
        xcframework = framework_path(package.build_path, product_name, build_flavor)
        click.echo(f"🔍 Verifying '{xcframework}'...")
        report = PostBuildVerifier(settings, check_signature=check_signature).verify(
            xcframework, dsyms_path(package.build_path, product_name, build_flavor)
        )
    except (BuildError, VerificationError) as e:
        click.secho(f"❌ Verification failed: {e}", fg="red", err=True)
        raise click.Abort() from e

    for note in report.warnings:
        click.secho(f"⚠️  {note}", fg="yellow")
    for problem in report.failures:
        click.secho(f"❌ {problem}", fg="red", err=True)
    if report.outcome == "failed":
        raise click.Abort()
    click.secho(f"✅ Verification {report.outcome}.", fg="green")


@cli.command("clean")
@manifest_option
def clean_command(pyproject_toml_path: str | None) -> None:
    """Removes the artifact cache."""
    click.echo("🧹 Cleaning artifact cache...")
    try:
        settings = load_settings(pyproject_toml_path)
    except BuildError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        raise click.Abort() from e
    context = BuildContext(settings)
    if context.cache.clean():
        click.secho(f"✅ Removed cache directory: {settings.cache_dir}", fg="green")
    else:
        click.secho("i️ Cache directory not found, nothing to clean.", fg="yellow")


main = cli
