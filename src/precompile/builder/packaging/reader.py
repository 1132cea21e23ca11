"""Reads package declarations (`package.json` + `spm.config.json`) into models."""

import json
from pathlib import Path
from typing import Any

from pyvider.telemetry import logger

from ..exceptions import ConfigurationError
from ..models import (
    CompilerFlags,
    FileMapping,
    PackageSource,
    Product,
    RemotePackageRef,
    ResourceRule,
    Target,
    TargetKind,
    VersionRequirement,
    parse_dependency_ref,
)

SPM_CONFIG_FILENAME = "spm.config.json"
PACKAGE_JSON_FILENAME = "package.json"

# Layouts searched under the packages directory, scoped packages included.
DISCOVERY_PATTERNS = (
    f"*/{SPM_CONFIG_FILENAME}",
    f"@*/*/{SPM_CONFIG_FILENAME}",
    f"external/*/{SPM_CONFIG_FILENAME}",
    f"external/@*/*/{SPM_CONFIG_FILENAME}",
)


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a JSON object.")
    return data


def _strings(data: dict[str, Any], key: str, where: str) -> tuple[str, ...]:
    value = data.get(key) or []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigurationError(f"'{key}' of {where} must be a list of strings.")
    return tuple(value)


class PackageReader:
    """Reads one package root into a PackageSource."""

    def __init__(self, package_root: Path, build_root: Path) -> None:
        if not (package_root / SPM_CONFIG_FILENAME).is_file():
            raise ConfigurationError(
                f"No {SPM_CONFIG_FILENAME} found in package: {package_root}"
            )
        self.package_root = package_root
        self.build_root = build_root

    def read(self) -> PackageSource:
        package_json_path = self.package_root / PACKAGE_JSON_FILENAME
        package_json = (
            _read_json(package_json_path) if package_json_path.is_file() else {}
        )
        name = str(package_json.get("name") or self.package_root.name)
        version = str(package_json.get("version") or "")

        config = _read_json(self.package_root / SPM_CONFIG_FILENAME)
        raw_products = config.get("products")
        if not isinstance(raw_products, list) or not raw_products:
            raise ConfigurationError(
                f"{self.package_root / SPM_CONFIG_FILENAME} declares no products."
            )

        products = tuple(self._parse_product(name, p) for p in raw_products)
        seen: set[str] = set()
        for product in products:
            if product.name in seen:
                raise ConfigurationError(
                    f"Package {name} declares product {product.name} twice."
                )
            seen.add(product.name)

        return PackageSource(
            name=name,
            version=version,
            path=self.package_root.resolve(),
            build_path=(self.build_root / name).resolve(),
            products=products,
        )

    def _parse_product(self, package_name: str, data: Any) -> Product:
        if not isinstance(data, dict) or not data.get("name"):
            raise ConfigurationError(
                f"Every product of {package_name} needs a name: {data!r}"
            )
        where = f"{package_name}/{data['name']}"
        raw_targets = data.get("targets")
        if not isinstance(raw_targets, list) or not raw_targets:
            raise ConfigurationError(f"Product {where} declares no targets.")

        targets = tuple(self._parse_target(where, t) for t in raw_targets)
        names = [t.name for t in targets]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(
                f"Product {where} declares duplicate targets: {', '.join(duplicates)}"
            )

        remote_packages = []
        for raw in data.get("spmPackages") or []:
            if not isinstance(raw, dict) or not raw.get("url") or not raw.get(
                "productName"
            ):
                raise ConfigurationError(
                    f"Remote package of {where} needs 'url' and 'productName': {raw!r}"
                )
            remote_packages.append(
                RemotePackageRef(
                    url=str(raw["url"]),
                    version=VersionRequirement.from_dict(raw.get("version") or {}),
                    product_name=str(raw["productName"]),
                    package_name=raw.get("packageName"),
                )
            )

        return Product(
            name=str(data["name"]),
            platforms=_strings(data, "platforms", where),
            targets=targets,
            external_dependencies=tuple(
                parse_dependency_ref(ref)
                for ref in _strings(data, "externalDependencies", where)
            ),
            remote_packages=tuple(remote_packages),
            swift_language_versions=_strings(data, "swiftLanguageVersions", where),
        )

    def _parse_target(self, where: str, data: Any) -> Target:
        if not isinstance(data, dict) or not data.get("name"):
            raise ConfigurationError(f"Every target of {where} needs a name: {data!r}")
        where = f"{where}/{data['name']}"
        try:
            kind = TargetKind(data.get("type"))
        except ValueError as e:
            raise ConfigurationError(
                f"Target {where} has unknown type {data.get('type')!r}."
            ) from e
        if not data.get("path"):
            raise ConfigurationError(f"Target {where} needs a path.")

        file_mappings = []
        for raw in data.get("fileMapping") or []:
            if not isinstance(raw, dict) or "from" not in raw or "to" not in raw:
                raise ConfigurationError(
                    f"File mapping of {where} needs 'from' and 'to': {raw!r}"
                )
            if raw.get("type", "source") not in ("source", "header"):
                raise ConfigurationError(
                    f"File mapping of {where} has unknown type {raw.get('type')!r}."
                )
            file_mappings.append(
                FileMapping(
                    source=str(raw["from"]),
                    destination=str(raw["to"]),
                    kind=raw.get("type", "source"),
                )
            )

        resources = []
        for raw in data.get("resources") or []:
            if isinstance(raw, str):
                raw = {"path": raw}
            if not isinstance(raw, dict) or not raw.get("path"):
                raise ConfigurationError(f"Resource of {where} needs a path: {raw!r}")
            if raw.get("rule", "process") not in ("process", "copy"):
                raise ConfigurationError(
                    f"Resource of {where} has unknown rule {raw.get('rule')!r}."
                )
            resources.append(
                ResourceRule(path=str(raw["path"]), rule=raw.get("rule", "process"))
            )

        raw_flags = data.get("compilerFlags")
        try:
            compiler_flags = CompilerFlags.parse(raw_flags) if raw_flags else None
        except ConfigurationError as e:
            raise ConfigurationError(f"Target {where}: {e}") from e

        return Target(
            name=str(data["name"]),
            kind=kind,
            path=str(data["path"]),
            dependencies=_strings(data, "dependencies", where),
            module_name=data.get("moduleName"),
            file_mappings=tuple(file_mappings),
            include_directories=_strings(data, "includeDirectories", where),
            resources=tuple(resources),
            defines=_strings(data, "defines", where),
            compiler_flags=compiler_flags,
            linked_frameworks=_strings(data, "linkedFrameworks", where),
            linker_flags=_strings(data, "linkerFlags", where),
            exclude=_strings(data, "exclude", where),
            public_headers=data.get("publicHeaders", True) is not False,
        )


def discover_packages(packages_dir: Path, build_root: Path) -> dict[str, PackageSource]:
    """Reads every package under `packages_dir` that carries an spm.config.json."""
    if not packages_dir.is_dir():
        raise ConfigurationError(f"Packages directory not found: {packages_dir}")

    config_paths: dict[Path, None] = {}
    for pattern in DISCOVERY_PATTERNS:
        for config_path in sorted(packages_dir.glob(pattern)):
            config_paths.setdefault(config_path.resolve(), None)

    packages: dict[str, PackageSource] = {}
    for config_path in config_paths:
        package = PackageReader(config_path.parent, build_root).read()
        if package.name in packages:
            raise ConfigurationError(
                f"Package name {package.name} is declared by both "
                f"{packages[package.name].path} and {package.path}."
            )
        packages[package.name] = package

    logger.debug("Discovered packages", count=len(packages))
    return packages
