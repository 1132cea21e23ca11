"""Per-run context: settings, discovered packages, cache and resolved variables."""

import json
from pathlib import Path
import re

from .artifacts import ArtifactCache
from .config import Settings
from .exceptions import ConfigurationError
from .frameworks import framework_path
from .models import BuildFlavor, PackageSource
from .packaging.reader import PACKAGE_JSON_FILENAME, discover_packages

_PLACEHOLDER_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

PACKAGE_VERSION = "PACKAGE_VERSION"
REACT_NATIVE_MINOR_VERSION = "REACT_NATIVE_MINOR_VERSION"
KNOWN_VARIABLES = (PACKAGE_VERSION, REACT_NATIVE_MINOR_VERSION)


class BuildContext:
    """
    Everything a run looks up more than once. Built once per orchestrator run
    and passed down, so nothing is cached between runs.
    """

    def __init__(
        self,
        settings: Settings,
        cache: ArtifactCache | None = None,
        packages: dict[str, PackageSource] | None = None,
    ) -> None:
        self.settings = settings
        self.cache = cache or ArtifactCache(
            settings.cache_dir,
            settings.versions,
            max_workers=settings.max_download_workers,
            header_source_root=settings.header_source_root,
            header_modules_file=settings.header_modules_file,
        )
        self._packages = packages
        self._product_owners: dict[str, str] | None = None
        self._variables: dict[tuple[str, str], str] = {}

    @property
    def packages(self) -> dict[str, PackageSource]:
        if self._packages is None:
            self._packages = discover_packages(
                self.settings.packages_dir, self.settings.build_dir
            )
        return self._packages

    def package(self, name: str) -> PackageSource:
        try:
            return self.packages[name]
        except KeyError as e:
            raise ConfigurationError(
                f"Unknown package '{name}' (no spm.config.json found under "
                f"{self.settings.packages_dir})."
            ) from e

    @property
    def product_owners(self) -> dict[str, str]:
        """Product name -> owning package name; the first declaring package wins."""
        if self._product_owners is None:
            owners: dict[str, str] = {}
            for package in self.packages.values():
                for product in package.products:
                    owners.setdefault(product.name, package.name)
            self._product_owners = owners
        return self._product_owners

    def owner_of_product(self, product_name: str) -> PackageSource | None:
        owner = self.product_owners.get(product_name)
        return self.packages[owner] if owner else None

    def framework_path(
        self, package_name: str, product_name: str, flavor: BuildFlavor
    ) -> Path:
        return framework_path(self.package(package_name).build_path, product_name, flavor)

    def variable(self, name: str, package: PackageSource) -> str:
        key = (name, package.name if name == PACKAGE_VERSION else "")
        if key not in self._variables:
            self._variables[key] = self._resolve_variable(name, package)
        return self._variables[key]

    def _resolve_variable(self, name: str, package: PackageSource) -> str:
        if name == PACKAGE_VERSION:
            if not package.version:
                raise ConfigurationError(
                    f"Package {package.name} has no version in its package.json."
                )
            return package.version
        if name == REACT_NATIVE_MINOR_VERSION:
            return str(self._react_native_minor_version(package))
        raise ConfigurationError(f"Unknown variable ${{{name}}}")

    def _react_native_minor_version(self, package: PackageSource) -> int:
        version = self.settings.react_native_version
        source = "[tool.precompile] react_native_version"
        if not version:
            package_json = package.path.parent / "react-native" / PACKAGE_JSON_FILENAME
            source = str(package_json)
            try:
                version = json.loads(package_json.read_text()).get("version", "")
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigurationError(
                    f"Failed to resolve {REACT_NATIVE_MINOR_VERSION} from {package_json}: {e}"
                ) from e
        parts = str(version).split(".")
        if len(parts) < 2 or not parts[1].isdigit():
            raise ConfigurationError(
                f"Could not parse minor version from react-native version "
                f"{version!r} ({source})."
            )
        return int(parts[1])

    def substitute(self, flag: str, package: PackageSource) -> str:
        """Replaces every `${NAME}` placeholder; unknown names raise ConfigurationError."""

        def _replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in KNOWN_VARIABLES:
                raise ConfigurationError(f"Unknown placeholder ${{{name}}}")
            return self.variable(name, package)

        result = _PLACEHOLDER_RE.sub(_replace, flag)
        if "${" in result:
            raise ConfigurationError(f"Malformed placeholder in {flag!r}")
        return result
