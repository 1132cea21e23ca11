"""Runs the resolve, generate, build, compose and verify pipeline for a set of packages."""

from pathlib import Path
import shutil

from attrs import define, field
from pyvider.telemetry import logger

from ..artifacts import Fetcher, LocalTarballFetcher
from ..compiler import (
    BuildDriver,
    build_platforms_for_product,
    package_swift_path,
    staging_root,
)
from ..context import BuildContext
from ..exceptions import BuildError, VerificationError
from ..frameworks import FrameworkComposer, dsyms_path, framework_path
from ..manifest import ManifestGenerator, write_manifest
from ..models import BuildFlavor, PackageSource, PlainName, Product
from ..sources import stage_product_sources
from ..summary import BuildSummary, UnitStatus
from ..verifier import PostBuildVerifier
from .resolver import BuildOrder, DependencyResolver

STEP_ERRORS = (BuildError, OSError)


@define(frozen=True, slots=True)
class BuildOptions:
    flavors: tuple[BuildFlavor, ...] = (BuildFlavor.DEBUG, BuildFlavor.RELEASE)
    platform: str | None = None
    product: str | None = None
    clean: bool = False
    clean_cache: bool = False
    skip_generate: bool = False
    skip_artifacts: bool = False
    skip_build: bool = False
    skip_compose: bool = False
    skip_verify: bool = False
    sign_identity: str | None = None
    timestamp: bool = True
    error_log_dir: Path | None = field(default=None)


class BuildOrchestrator:
    def __init__(
        self,
        context: BuildContext,
        options: BuildOptions | None = None,
        driver: BuildDriver | None = None,
        composer: FrameworkComposer | None = None,
        verifier: PostBuildVerifier | None = None,
        fetcher: Fetcher | None = None,
    ) -> None:
        self.context = context
        self.options = options or BuildOptions()
        settings = context.settings
        self.driver = driver or BuildDriver(settings)
        self.composer = composer or FrameworkComposer(timeout=settings.build_timeout)
        self.verifier = verifier or PostBuildVerifier(
            settings, check_signature=bool(self.options.sign_identity)
        )
        self.fetcher = fetcher or LocalTarballFetcher(settings.local_tarballs)
        self.resolver = DependencyResolver(context)
        self.generator = ManifestGenerator(context)

    def run(self, requested: list[str]) -> BuildSummary:
        summary = BuildSummary()
        try:
            order = self.resolve(requested)
            if self.options.clean_cache:
                logger.info(f"Cleaning artifact cache {self.context.cache.root}")
                self.context.cache.clean()

            total = len(order.packages)
            for index, name in enumerate(order.packages, start=1):
                self.build_package(self.context.package(name), index, total, summary)
        finally:
            summary.print_table()
            log_path = summary.write_error_log(
                self.options.error_log_dir or self.context.settings.build_dir
            )
            if log_path is not None:
                logger.info(f"📝 Error log written to: {log_path}")
        return summary

    def resolve(self, requested: list[str]) -> BuildOrder:
        if requested:
            logger.info(f"📦 Prebuilding packages: {', '.join(requested)}")
        else:
            logger.info("📦 Discovering packages with spm.config.json...")
        order = self.resolver.resolve(requested)
        if order.has_cycle:
            logger.warning(
                "Building in requested order despite a dependency cycle",
                packages=list(order.cycle),
            )
        return order

    def cache_dependencies(self, package: PackageSource) -> list[str]:
        names: dict[str, None] = {}
        for ref in self.resolver.external_refs(package):
            if isinstance(ref, PlainName) and self.context.cache.is_cache_dependency(ref.name):
                names.setdefault(self.context.cache.lookup(ref.name).key, None)
        return list(names)

    def _products(self, package: PackageSource) -> list[Product]:
        if self.options.product is None:
            return list(package.products)
        return [p for p in package.products if p.name == self.options.product]

    def build_package(
        self, package: PackageSource, index: int, total: int, summary: BuildSummary
    ) -> None:
        flavors = self.options.flavors
        logger.info(
            f"📦 [{index}/{total}] {package.name} "
            f"[{' + '.join(f.value for f in flavors)}]"
        )
        logger.debug(
            "Package paths",
            package=str(package.path),
            build=str(package.build_path),
            cache=str(self.context.cache.root),
        )
        products = self._products(package)
        clean_error: BaseException | None = None
        if self.options.clean:
            try:
                self._clean_package(package, products)
            except STEP_ERRORS as e:
                logger.error(f"❌ [{package.name}] Clean failed: {e}")
                clean_error = e

        for flavor in flavors:
            include_dirs: list[Path] = []
            setup_error = clean_error
            cache_names = self.cache_dependencies(package)
            if setup_error is None:
                try:
                    if cache_names and not self.options.skip_artifacts:
                        self.context.cache.ensure(cache_names, flavor, self.fetcher)
                    include_dirs = self._driver_include_dirs(cache_names, flavor)
                except STEP_ERRORS as e:
                    logger.error(f"❌ [{package.name}] Artifacts unavailable: {e}")
                    setup_error = e

            for product in products:
                status = summary.add_unit(package.name, product.name, flavor)
                if setup_error is not None:
                    summary.record_failure(status, "generate", setup_error)
                    continue
                self.build_unit(package, product, flavor, include_dirs, status, summary)

    def _driver_include_dirs(self, cache_names: list[str], flavor: BuildFlavor) -> list[Path]:
        cache = self.context.cache
        include_dirs: list[Path] = []
        for name in cache_names:
            artifact = cache.lookup(name)
            if artifact is not None and not artifact.manifest_includes:
                include_dirs.extend(cache.include_paths(artifact, flavor))
        return include_dirs

    def _clean_package(self, package: PackageSource, products: list[Product]) -> None:
        output = package.build_path / "output"
        if output.exists():
            logger.info(f"Cleaning output folder {output}")
            shutil.rmtree(output)
        for product in products:
            staging = staging_root(package, product)
            if staging.exists():
                logger.info(f"Cleaning generated sources {staging}")
                shutil.rmtree(staging)
            self.driver.clean(package, product)

    def build_unit(
        self,
        package: PackageSource,
        product: Product,
        flavor: BuildFlavor,
        include_dirs: list[Path],
        status: UnitStatus,
        summary: BuildSummary,
    ) -> None:
        """Runs the four steps of one unit; a failed step skips the rest."""
        unit = f"[{package.name}/{product.name}]"
        options = self.options

        if not options.skip_generate:
            try:
                stage_product_sources(package, product)
                manifest = self.generator.generate(package, product, flavor)
                changed = write_manifest(manifest, package_swift_path(package, product))
                logger.debug("Manifest written", unit=unit, changed=changed)
                status.generate = "success"
            except STEP_ERRORS as e:
                logger.error(f"❌ {unit} Generate failed: {e}")
                summary.record_failure(status, "generate", e)
                return

        built_platforms: list[str] | None = None
        if not options.skip_build:
            try:
                built_platforms = self.driver.build(
                    package, product, flavor, options.platform, include_dirs
                )
                status.build = "success"
            except STEP_ERRORS as e:
                logger.error(f"❌ {unit} Build failed: {e}")
                summary.record_failure(status, "build", e)
                return

        if not options.skip_compose:
            try:
                self.composer.compose(
                    package,
                    product,
                    flavor,
                    built_platforms or build_platforms_for_product(product, options.platform),
                    sign_identity=options.sign_identity,
                    timestamp=options.timestamp,
                )
                status.compose = "success"
            except STEP_ERRORS as e:
                logger.error(f"❌ {unit} Compose failed: {e}")
                summary.record_failure(status, "compose", e)
                return

        if not options.skip_verify:
            try:
                report = self.verifier.verify(
                    framework_path(package.build_path, product.name, flavor),
                    dsyms_path(package.build_path, product.name, flavor),
                )
            except (VerificationError, *STEP_ERRORS) as e:
                logger.error(f"❌ {unit} Verify failed: {e}")
                summary.record_failure(status, "verify", e)
                return
            if report.outcome == "failed":
                summary.record_failure(
                    status,
                    "verify",
                    VerificationError(
                        "Verification failed: " + "; ".join(report.failures or ["no slices"])
                    ),
                )
            else:
                status.verify = report.outcome
