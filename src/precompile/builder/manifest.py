"""
Manifest generator.

`ManifestGenerator.generate` resolves one (package, product, flavor) into a
typed `Manifest`; `render_manifest` is the only place that turns it into
Package.swift text.
"""

import os
from pathlib import Path
import posixpath
import re

from attrs import define, field
from pyvider.telemetry import logger
import yaml

from .artifacts import CacheArtifact
from .compiler import staging_root
from .context import BuildContext
from .exceptions import ConfigurationError, DependencyError
from .frameworks import find_headers_dir, framework_path
from .models import (
    NEW_ARCH_DEFINE,
    BuildFlavor,
    DependencyRef,
    PackageRef,
    PackageSource,
    PlainName,
    Product,
    ProductRef,
    Target,
    TargetKind,
    VersionRequirement,
)
from .packaging.resolver import DependencyResolver
from .rendering import get_template_env, swift_string, write_if_changed

MANIFEST_TEMPLATE = "Package.swift.j2"
GENERATED_TARGET_PREFIX = ".build/"

_DEFINE_FLAG_RE = re.compile(r"^-D(\w+)(?:=(.+))?$")


# Settings


@define(frozen=True, slots=True)
class HeaderSearchPath:
    path: str


@define(frozen=True, slots=True)
class Define:
    name: str
    value: str | None = None


@define(frozen=True, slots=True)
class UnsafeFlags:
    flags: tuple[str, ...]
    configuration: str | None = None


@define(frozen=True, slots=True)
class LinkedFramework:
    name: str


@define(frozen=True, slots=True)
class UpcomingFeature:
    name: str


Setting = HeaderSearchPath | Define | UnsafeFlags | LinkedFramework | UpcomingFeature


# Targets and packages


@define(frozen=True, slots=True)
class BinaryTargetDecl:
    name: str
    path: str


@define(frozen=True, slots=True)
class TargetDependencyDecl:
    name: str
    package: str | None = None


@define(frozen=True, slots=True)
class ResourceDecl:
    rule: str
    path: str


@define(frozen=True, slots=True)
class SourceTargetDecl:
    name: str
    kind: TargetKind
    path: str
    dependencies: tuple[TargetDependencyDecl, ...] = ()
    resources: tuple[ResourceDecl, ...] = ()
    public_headers_path: str | None = None
    c_settings: tuple[Setting, ...] = ()
    cxx_settings: tuple[Setting, ...] = ()
    swift_settings: tuple[Setting, ...] = ()
    linker_settings: tuple[Setting, ...] = ()

    @property
    def setting_sections(self) -> list[tuple[str, tuple[Setting, ...]]]:
        sections = [
            ("cSettings", self.c_settings),
            ("cxxSettings", self.cxx_settings),
            ("swiftSettings", self.swift_settings),
            ("linkerSettings", self.linker_settings),
        ]
        return [(label, settings) for label, settings in sections if settings]


@define(frozen=True, slots=True)
class RemotePackageDecl:
    url: str
    requirement: VersionRequirement
    package_name: str
    product_name: str


@define(frozen=True, slots=True)
class Manifest:
    name: str
    product_name: str
    platforms: tuple[str, ...]
    product_targets: tuple[str, ...]
    targets: tuple[BinaryTargetDecl | SourceTargetDecl, ...]
    remote_packages: tuple[RemotePackageDecl, ...] = ()
    swift_language_versions: tuple[str, ...] = ()


@define(slots=True)
class _SiblingBinary:
    package: str
    product: str


@define(slots=True)
class _Resolution:
    """Dependency lookups shared by every target of one product."""

    binaries: list[BinaryTargetDecl] = field(factory=list)
    binary_names: set[str] = field(factory=set)
    artifacts: dict[str, CacheArtifact] = field(factory=dict)
    siblings: dict[str, _SiblingBinary] = field(factory=dict)
    remote_products: dict[str, str] = field(factory=dict)

    def add_binary(self, name: str, path: str) -> None:
        if name in self.binary_names:
            return
        self.binaries.append(BinaryTargetDecl(name=name, path=path))
        self.binary_names.add(name)


class ManifestGenerator:
    def __init__(self, context: BuildContext) -> None:
        self.context = context
        self.resolver = DependencyResolver(context)

    def generate(
        self, package: PackageSource, product: Product, flavor: BuildFlavor
    ) -> Manifest:
        manifest_dir = staging_root(package, product)
        resolution = _Resolution()

        for ref in product.external_dependencies:
            self._resolve_external(
                package, product, flavor, manifest_dir, ref, resolution
            )

        remote_packages = []
        for remote in product.remote_packages:
            package_name = remote.resolved_package_name
            remote_packages.append(
                RemotePackageDecl(
                    url=remote.url,
                    requirement=remote.version,
                    package_name=package_name,
                    product_name=remote.product_name,
                )
            )
            resolution.remote_products[remote.product_name] = package_name

        # Vendored frameworks before source targets so those can depend on them.
        for target in product.targets:
            if not target.is_binary:
                continue
            vendored = package.path / target.path
            if not vendored.exists():
                raise DependencyError(
                    f"Vendored framework {target.name} of {package.name}/{product.name} "
                    f"not found at {vendored}"
                )
            resolution.add_binary(target.name, _relative(vendored, manifest_dir))

        source_targets = [
            self._source_target(package, product, flavor, target, resolution)
            for target in product.targets
            if not target.is_binary
        ]

        return Manifest(
            name=package.name,
            product_name=product.name,
            platforms=product.platforms,
            product_targets=tuple(t.name for t in product.targets),
            targets=(*resolution.binaries, *source_targets),
            remote_packages=tuple(remote_packages),
            swift_language_versions=product.swift_language_versions,
        )

    def _resolve_external(
        self,
        package: PackageSource,
        product: Product,
        flavor: BuildFlavor,
        manifest_dir: Path,
        raw_ref: DependencyRef,
        resolution: _Resolution,
    ) -> None:
        artifact = None
        if isinstance(raw_ref, PlainName):
            artifact = self.context.cache.lookup(raw_ref.name)
        if artifact is not None:
            binary = self.context.cache.framework_path(artifact, flavor)
            if not binary.exists():
                raise DependencyError(
                    f"{artifact.display_name} binary required by "
                    f"{package.name}/{product.name} not found at {binary}"
                )
            resolution.add_binary(artifact.display_name, _relative(binary, manifest_dir))
            resolution.artifacts[artifact.key] = artifact
            return

        ref = self.resolver.canonicalize(raw_ref)
        if isinstance(ref, ProductRef):
            products = [ref.product]
        elif isinstance(ref, PackageRef):
            products = [p.name for p in self.context.package(ref.package).products]
        else:
            raise DependencyError(
                f"Could not resolve external dependency '{ref}' of "
                f"{package.name}/{product.name}"
            )

        for product_name in products:
            binary = self.context.framework_path(ref.package, product_name, flavor)
            if not binary.exists():
                raise DependencyError(
                    f"Could not find xcframework for external dependency "
                    f"{ref.package}/{product_name} at expected path: {binary}. "
                    f"Build {ref.package} first."
                )
            resolution.add_binary(product_name, _relative(binary, manifest_dir))
            sibling = _SiblingBinary(ref.package, product_name)
            resolution.siblings[product_name] = sibling
            resolution.siblings[f"{ref.package}/{product_name}"] = sibling

    def _target_dependencies(
        self,
        package: PackageSource,
        product: Product,
        target: Target,
        resolution: _Resolution,
    ) -> tuple[TargetDependencyDecl, ...]:
        local_names = {t.name for t in product.targets}
        resolved = []
        for dep in target.dependencies:
            if dep in resolution.remote_products:
                resolved.append(
                    TargetDependencyDecl(dep, package=resolution.remote_products[dep])
                )
            elif dep in local_names:
                resolved.append(TargetDependencyDecl(dep))
            elif dep in resolution.siblings:
                resolved.append(TargetDependencyDecl(resolution.siblings[dep].product))
            elif (artifact := self.context.cache.lookup(dep)) and (
                artifact.key in resolution.artifacts
            ):
                resolved.append(TargetDependencyDecl(artifact.display_name))
            else:
                raise DependencyError(
                    f"Target {target.name} of {package.name}/{product.name} depends on "
                    f"'{dep}', which is neither a target, a declared external "
                    "dependency nor a remote package product."
                )
        return tuple(resolved)

    def _source_target(
        self,
        package: PackageSource,
        product: Product,
        flavor: BuildFlavor,
        target: Target,
        resolution: _Resolution,
    ) -> SourceTargetDecl:
        dependencies = self._target_dependencies(package, product, target, resolution)
        resources = self._resources(package, product, target)
        linker_settings = self._linker_settings(target)

        if target.kind is TargetKind.SWIFT:
            return SourceTargetDecl(
                name=target.name,
                kind=target.kind,
                path=target.name,
                dependencies=dependencies,
                resources=resources,
                swift_settings=self._swift_settings(package, product, flavor, target),
                linker_settings=linker_settings,
            )

        c_settings, cxx_settings = self._c_settings(
            package, product, flavor, target, resolution
        )
        return SourceTargetDecl(
            name=target.name,
            kind=target.kind,
            path=target.name,
            dependencies=dependencies,
            resources=resources,
            public_headers_path="include" if target.public_headers else None,
            c_settings=c_settings,
            cxx_settings=cxx_settings,
            linker_settings=linker_settings,
        )

    def _resources(
        self, package: PackageSource, product: Product, target: Target
    ) -> tuple[ResourceDecl, ...]:
        resources = []
        for rule in target.resources:
            matches = sorted(package.path.glob(rule.path))
            if not matches:
                raise ConfigurationError(
                    f'Resource not found: "{rule.path}" in target {target.name} of '
                    f"{package.name}/{product.name} (resolved from package root "
                    f"{package.path}). No files matched this path or glob pattern."
                )
            resources.extend(
                ResourceDecl(rule=rule.rule, path=f"resources/{match.name}")
                for match in matches
            )
        return tuple(resources)

    def _linker_settings(self, target: Target) -> tuple[Setting, ...]:
        settings: list[Setting] = [LinkedFramework(f) for f in target.linked_frameworks]
        if target.linker_flags:
            settings.append(UnsafeFlags(tuple(target.linker_flags)))
        return tuple(settings)

    def _custom_flags(
        self,
        package: PackageSource,
        product: Product,
        flavor: BuildFlavor,
        target: Target,
    ) -> tuple[list[str], list[str]]:
        if target.compiler_flags is None:
            return [], []
        resolved = target.compiler_flags.resolve(flavor)

        def _substitute(flags: tuple[str, ...]) -> list[str]:
            result = []
            for flag in flags:
                try:
                    result.append(self.context.substitute(flag, package))
                except ConfigurationError as e:
                    raise ConfigurationError(
                        f"{package.name}/{product.name} target {target.name}, "
                        f"flag {flag!r}: {e}"
                    ) from e
            return result

        return _substitute(resolved.c), _substitute(resolved.cxx)

    def _cache_artifacts(self, product: Product, target: Target) -> list[CacheArtifact]:
        """Cache artifacts visible to a target: the product's externals, then its own."""
        names = [
            ref.name for ref in product.external_dependencies if isinstance(ref, PlainName)
        ]
        names.extend(target.dependencies)
        artifacts: dict[str, CacheArtifact] = {}
        for name in names:
            artifact = self.context.cache.lookup(name)
            if artifact is not None:
                artifacts.setdefault(artifact.key, artifact)
        return list(artifacts.values())

    def _cache_flags(
        self, product: Product, target: Target
    ) -> dict[BuildFlavor, list[str]]:
        """VFS overlay and include flags of the cache artifacts a target can import."""
        flags: dict[BuildFlavor, list[str]] = {flavor: [] for flavor in BuildFlavor}
        for artifact in self._cache_artifacts(product, target):
            for flavor in BuildFlavor:
                overlay = self.context.cache.overlay_path(artifact, flavor)
                if overlay is not None and overlay.exists():
                    flags[flavor].extend(["-ivfsoverlay", str(overlay)])
                    root = _overlay_root(overlay)
                    if root:
                        flags[flavor].extend(["-I", root])
                if artifact.manifest_includes:
                    for include in self.context.cache.include_paths(artifact, flavor):
                        flags[flavor].extend(["-I", str(include)])
        return flags

    def _swift_settings(
        self,
        package: PackageSource,
        product: Product,
        flavor: BuildFlavor,
        target: Target,
    ) -> tuple[Setting, ...]:
        settings: list[Setting] = [
            UpcomingFeature("LibraryEvolution"),
            Define(NEW_ARCH_DEFINE),
            UnsafeFlags(("-Xcc", "-fmodules")),
        ]
        for flavor_key, flags in self._cache_flags(product, target).items():
            if flags:
                settings.append(
                    UnsafeFlags(_xcc(flags), configuration=flavor_key.configuration)
                )
        c_flags, _ = self._custom_flags(package, product, flavor, target)
        if c_flags:
            settings.append(UnsafeFlags(_xcc(c_flags)))
        return tuple(settings)

    def _include_directory(
        self, package: PackageSource, target: Target, include_dir: str
    ) -> Path:
        """
        `.build/` target paths live under the package build path; anything that
        lands in `<package>/.build/` is remapped there too.
        """
        if target.path.startswith(GENERATED_TARGET_PREFIX):
            base = package.build_path / target.path[len(GENERATED_TARGET_PREFIX) :]
        else:
            base = package.path / target.path
        resolved = Path(os.path.normpath(base / include_dir))
        package_build = package.path / ".build"
        if resolved == package_build:
            return package.build_path
        if resolved.is_relative_to(package_build):
            return package.build_path / resolved.relative_to(package_build)
        return resolved

    def _c_settings(
        self,
        package: PackageSource,
        product: Product,
        flavor: BuildFlavor,
        target: Target,
        resolution: _Resolution,
    ) -> tuple[tuple[Setting, ...], tuple[Setting, ...]]:
        common: list[Setting] = [
            HeaderSearchPath("include"),
            HeaderSearchPath(f"include/{product.name}"),
        ]
        if target.module_name and target.module_name != product.name:
            common.append(HeaderSearchPath(f"include/{target.module_name}"))

        mapped_dirs: dict[str, None] = {}
        for mapping in target.file_mappings:
            if mapping.kind != "header":
                continue
            directory = posixpath.dirname(mapping.destination)
            if directory and directory != ".":
                mapped_dirs.setdefault(f"include/{directory}", None)
        common.extend(HeaderSearchPath(d) for d in mapped_dirs)

        common.append(Define(NEW_ARCH_DEFINE, "1"))
        for define in target.defines:
            name, _, value = define.partition("=")
            common.append(Define(name, value or None))
        common.append(UnsafeFlags(("-fmodules",)))

        if target.include_directories:
            include_flags: list[str] = []
            for include_dir in target.include_directories:
                include_flags.extend(
                    ["-I", str(self._include_directory(package, target, include_dir))]
                )
            common.append(UnsafeFlags(tuple(include_flags)))

        sibling_flags: dict[BuildFlavor, list[str]] = {f: [] for f in BuildFlavor}
        for dep in target.dependencies:
            sibling = resolution.siblings.get(dep)
            if sibling is None:
                continue
            build_path = self.context.package(sibling.package).build_path
            for each in BuildFlavor:
                headers = find_headers_dir(
                    framework_path(build_path, sibling.product, each)
                )
                if headers is not None:
                    sibling_flags[each].extend(["-I", str(headers)])
        for each, flags in sibling_flags.items():
            if flags:
                common.append(UnsafeFlags(tuple(flags), configuration=each.configuration))

        c_flags, cxx_flags = self._custom_flags(package, product, flavor, target)
        c_settings = [*common, *_defines_and_flags(c_flags)]
        cxx_settings = [*common, *_defines_and_flags(cxx_flags)]

        for each, flags in self._cache_flags(product, target).items():
            if flags:
                overlay = UnsafeFlags(tuple(flags), configuration=each.configuration)
                c_settings.append(overlay)
                cxx_settings.append(overlay)

        return tuple(c_settings), tuple(cxx_settings)


def _relative(path: Path, start: Path) -> str:
    return Path(os.path.relpath(path, start)).as_posix()


def _xcc(flags: list[str]) -> tuple[str, ...]:
    return tuple(part for flag in flags for part in ("-Xcc", flag))


def _defines_and_flags(flags: list[str]) -> list[Setting]:
    """`-DNAME[=VALUE]` become defines so importers see them; the rest stay unsafe."""
    settings: list[Setting] = []
    others = []
    for flag in flags:
        match = _DEFINE_FLAG_RE.match(flag)
        if match:
            settings.append(Define(match.group(1), match.group(2)))
        else:
            others.append(flag)
    if others:
        settings.append(UnsafeFlags(tuple(others)))
    return settings


def _overlay_root(overlay: Path) -> str | None:
    try:
        data = yaml.safe_load(overlay.read_text())
        return str(data["roots"][0]["name"])
    except (OSError, yaml.YAMLError, KeyError, IndexError, TypeError) as e:
        logger.warning("Could not read VFS overlay root", overlay=str(overlay), error=str(e))
        return None


# Serialization


def _format_flags(flags: tuple[str, ...]) -> str:
    quoted = [f'"{swift_string(flag)}"' for flag in flags]
    pairs = [", ".join(quoted[i : i + 2]) for i in range(0, len(quoted), 2)]
    if len(pairs) <= 1:
        return f"[{', '.join(pairs)}]"
    lines = ",\n".join(f"                    {pair}" for pair in pairs)
    return f"[\n{lines},\n                ]"


def _render_setting(setting: Setting) -> str:
    match setting:
        case HeaderSearchPath(path=path):
            return f'.headerSearchPath("{swift_string(path)}")'
        case Define(name=name, value=None):
            return f'.define("{swift_string(name)}")'
        case Define(name=name, value=value):
            return f'.define("{swift_string(name)}", to: "{swift_string(value)}")'
        case UnsafeFlags(flags=flags, configuration=None):
            return f".unsafeFlags({_format_flags(flags)})"
        case UnsafeFlags(flags=flags, configuration=configuration):
            return (
                f".unsafeFlags({_format_flags(flags)}, "
                f".when(configuration: .{configuration}))"
            )
        case LinkedFramework(name=name):
            return f'.linkedFramework("{swift_string(name)}")'
        case UpcomingFeature(name=name):
            return f'.enableUpcomingFeature("{swift_string(name)}")'
    raise TypeError(f"Unsupported setting: {setting!r}")


def _render_dependency(dependency: TargetDependencyDecl) -> str:
    if dependency.package is None:
        return f'"{swift_string(dependency.name)}"'
    return (
        f'.product(name: "{swift_string(dependency.name)}", '
        f'package: "{swift_string(dependency.package)}")'
    )


def _render_requirement(requirement: VersionRequirement) -> str:
    return f'{requirement.kind}: "{swift_string(requirement.value)}"'


def render_manifest(manifest: Manifest) -> str:
    env = get_template_env(
        filters={
            "swift_setting": _render_setting,
            "swift_dependency": _render_dependency,
            "swift_requirement": _render_requirement,
        },
        tests={"binary_target": lambda t: isinstance(t, BinaryTargetDecl)},
    )
    return env.get_template(MANIFEST_TEMPLATE).render(manifest=manifest)


def write_manifest(manifest: Manifest, path: Path) -> bool:
    """Writes Package.swift; returns False when the content was unchanged."""
    written = write_if_changed(path, render_manifest(manifest))
    if not written:
        logger.debug("Package.swift unchanged", path=str(path))
    return written
