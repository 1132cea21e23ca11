"""
Versioned local cache of the upstream binary runtime dependencies (React,
Hermes, ReactNativeDependencies) that packages link against.
"""

from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
import re
import shutil
import tarfile
import tempfile

from attrs import define
from pyvider.telemetry import logger

from .exceptions import BuildError, ConfigurationError
from .headers.mapper import load_header_modules
from .headers.virtualizer import (
    is_overlay_prepared,
    materialize_overlay,
    overlay_template_path,
    prepare_stock_framework,
)
from .models import BuildFlavor


@define(frozen=True, slots=True)
class CacheArtifact:
    key: str
    display_name: str
    cache_dir_name: str
    framework_path: str
    version_key: str
    include_directories: tuple[str, ...] = ()
    vfs_overlay_file: str | None = None
    # Hermes ships jsi/ headers that clash with the React overlay, so its
    # include paths are handed to the build driver instead of the manifest.
    manifest_includes: bool = True


KNOWN_ARTIFACTS: dict[str, CacheArtifact] = {
    "hermes": CacheArtifact(
        key="hermes",
        display_name="Hermes",
        cache_dir_name="hermes",
        framework_path="destroot/Library/Frameworks/universal/hermesvm.xcframework",
        version_key="hermes",
        include_directories=("../../../../include",),
        manifest_includes=False,
    ),
    "react": CacheArtifact(
        key="react",
        display_name="React",
        cache_dir_name="react",
        framework_path="React.xcframework",
        version_key="react",
        include_directories=("Headers", "React_Core"),
        vfs_overlay_file="React-VFS.yaml",
    ),
    "reactnativedependencies": CacheArtifact(
        key="reactnativedependencies",
        display_name="ReactNativeDependencies",
        cache_dir_name="react-native-dependencies",
        framework_path="ReactNativeDependencies.xcframework",
        version_key="react",
        include_directories=("Headers",),
    ),
}

Fetcher = Callable[[CacheArtifact, str, BuildFlavor, Path], None]


def resolve_flavor_placeholder(template: str, flavor: BuildFlavor) -> str:
    """Substitutes `{flavor}` (any case) with the flavor name."""
    return re.sub(r"\{flavor\}", flavor.value, template, flags=re.IGNORECASE)


class LocalTarballFetcher:
    """Extracts artifacts from locally built tarballs."""

    def __init__(self, tarball_templates: dict[str, str]) -> None:
        self.tarball_templates = {k.lower(): v for k, v in tarball_templates.items()}

    def __call__(
        self,
        artifact: CacheArtifact,
        version: str,
        flavor: BuildFlavor,
        destination: Path,
    ) -> None:
        template = self.tarball_templates.get(artifact.key)
        if not template:
            raise BuildError(
                f"{artifact.display_name} {version} ({flavor.dirname}) is not cached "
                f"and no local tarball is configured for '{artifact.key}'."
            )
        tarball = Path(resolve_flavor_placeholder(template, flavor))
        if not tarball.is_file():
            raise BuildError(f"Local tarball not found: {tarball}")

        logger.info(f"Extracting {tarball.name} into {destination}")
        with tarfile.open(tarball) as archive:
            archive.extractall(destination, filter="data")


class ArtifactCache:
    """
    Read-mostly cache keyed by artifact, version and flavor:
    `<root>/<cache dir>/<version>/<flavor>/`.
    """

    def __init__(
        self,
        root: Path,
        versions: dict[str, str],
        artifacts: dict[str, CacheArtifact] | None = None,
        max_workers: int = 4,
        header_source_root: Path | None = None,
        header_modules_file: Path | None = None,
    ) -> None:
        self.root = root
        self.versions = dict(versions)
        self.artifacts = dict(KNOWN_ARTIFACTS if artifacts is None else artifacts)
        self.max_workers = max(1, max_workers)
        self.header_source_root = header_source_root
        self.header_modules_file = header_modules_file

    def lookup(self, name: str) -> CacheArtifact | None:
        return self.artifacts.get(name.lower())

    def is_cache_dependency(self, name: str) -> bool:
        return self.lookup(name) is not None

    def version_of(self, artifact: CacheArtifact) -> str:
        version = self.versions.get(artifact.version_key)
        if not version:
            raise ConfigurationError(
                f"No version configured for '{artifact.version_key}' "
                f"(needed by {artifact.display_name})."
            )
        return version

    def flavor_root(self, artifact: CacheArtifact, flavor: BuildFlavor) -> Path:
        return (
            self.root
            / artifact.cache_dir_name
            / self.version_of(artifact)
            / flavor.dirname
        )

    def framework_path(self, artifact: CacheArtifact, flavor: BuildFlavor) -> Path:
        return self.flavor_root(artifact, flavor) / artifact.framework_path

    def include_paths(self, artifact: CacheArtifact, flavor: BuildFlavor) -> list[Path]:
        framework = self.framework_path(artifact, flavor)
        return [(framework / d).resolve() for d in artifact.include_directories]

    def overlay_path(self, artifact: CacheArtifact, flavor: BuildFlavor) -> Path | None:
        if not artifact.vfs_overlay_file:
            return None
        return self.flavor_root(artifact, flavor) / artifact.vfs_overlay_file

    def is_cached(self, artifact: CacheArtifact, flavor: BuildFlavor) -> bool:
        return self.framework_path(artifact, flavor).exists()

    def ensure(
        self,
        names: Iterable[str],
        flavor: BuildFlavor,
        fetch: Fetcher,
    ) -> dict[str, Path]:
        """
        Makes sure every named artifact is present for the flavor, fetching
        missing ones concurrently. Returns artifact key -> framework path.
        """
        selected: dict[str, CacheArtifact] = {}
        for name in names:
            artifact = self.lookup(name)
            if artifact is None:
                raise ConfigurationError(f"Unknown cache artifact: {name}")
            selected[artifact.key] = artifact

        pending = [a for a in selected.values() if not self.is_cached(a, flavor)]
        if pending:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = [
                    pool.submit(self._fetch_one, artifact, flavor, fetch)
                    for artifact in pending
                ]
                for future in futures:
                    future.result()

        for artifact in selected.values():
            self._materialize_overlay(artifact, flavor)

        return {key: self.framework_path(a, flavor) for key, a in selected.items()}

    def _fetch_one(
        self, artifact: CacheArtifact, flavor: BuildFlavor, fetch: Fetcher
    ) -> None:
        version = self.version_of(artifact)
        destination = self.flavor_root(artifact, flavor)
        destination.parent.mkdir(parents=True, exist_ok=True)
        logger.info(
            f"Fetching {artifact.display_name} {version} ({flavor.dirname}) into cache"
        )

        staging = Path(
            tempfile.mkdtemp(prefix=f".{flavor.dirname}-", dir=destination.parent)
        )
        try:
            fetch(artifact, version, flavor, staging)
            if not (staging / artifact.framework_path).exists():
                raise BuildError(
                    f"Fetched {artifact.display_name} {version} does not contain "
                    f"{artifact.framework_path}"
                )
            try:
                staging.rename(destination)
            except OSError:
                # Another fetch of the same version finished first.
                if not destination.exists():
                    raise
                logger.debug(
                    "Artifact already cached by a concurrent fetch",
                    artifact=artifact.display_name,
                )
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

    def _materialize_overlay(self, artifact: CacheArtifact, flavor: BuildFlavor) -> None:
        overlay = self.overlay_path(artifact, flavor)
        if overlay is None:
            return
        framework = self.framework_path(artifact, flavor)
        if not is_overlay_prepared(framework.parent, artifact.display_name):
            if self.header_source_root is None or self.header_modules_file is None:
                logger.warning(
                    f"No VFS overlay prepared for {artifact.display_name}; nested header "
                    "imports will not resolve. Configure header_source_root and "
                    "header_modules, or run `precompile headers`.",
                    artifact=artifact.display_name,
                    flavor=flavor.value,
                )
                return
            prepare_stock_framework(
                framework,
                self.header_source_root,
                load_header_modules(self.header_modules_file),
                artifact.display_name,
            )
        materialize_overlay(
            overlay_template_path(framework.parent, artifact.display_name),
            framework,
            overlay,
        )

    def clean(self) -> bool:
        if not self.root.exists():
            return False
        shutil.rmtree(self.root)
        return True
