import enum
import json
from pathlib import Path
from typing import Any, Self

from attrs import define, field
from attrs.validators import in_

from .exceptions import ConfigurationError

# Preprocessor define every generated source target receives.
NEW_ARCH_DEFINE = "RCT_NEW_ARCH_ENABLED"

VERSION_REQUIREMENT_KINDS = ("exact", "from", "branch", "revision")


class BuildFlavor(enum.Enum):
    DEBUG = "Debug"
    RELEASE = "Release"

    @property
    def dirname(self) -> str:
        return self.value.lower()

    @property
    def configuration(self) -> str:
        """Name of the manifest `.when(configuration:)` clause."""
        return self.value.lower()

    @classmethod
    def parse(cls, value: str) -> "BuildFlavor":
        normalized = value.strip().lower()
        for flavor in cls:
            if flavor.value.lower() == normalized:
                return flavor
        raise ValueError(f"Unknown build flavor: {value!r}")


class TargetKind(enum.Enum):
    OBJC = "objc"
    SWIFT = "swift"
    CPP = "cpp"
    FRAMEWORK = "framework"

    @property
    def is_c_family(self) -> bool:
        return self in (TargetKind.OBJC, TargetKind.CPP)


@define(frozen=True, slots=True)
class ProductRef:
    package: str
    product: str

    def __str__(self) -> str:
        return f"{self.package}/{self.product}"


@define(frozen=True, slots=True)
class PackageRef:
    package: str

    def __str__(self) -> str:
        return self.package


@define(frozen=True, slots=True)
class PlainName:
    name: str

    def __str__(self) -> str:
        return self.name


DependencyRef = ProductRef | PackageRef | PlainName


def parse_dependency_ref(raw: str) -> DependencyRef:
    """Parses `package/Product`, `@scope/package/Product` or a bare name."""
    value = raw.strip()
    if not value:
        raise ConfigurationError("Empty external dependency reference.")
    if "/" not in value:
        return PlainName(value)

    parts = value.split("/")
    if parts[0].startswith("@"):
        if len(parts) != 3 or not all(parts):
            raise ConfigurationError(
                f"Invalid scoped dependency reference {raw!r}, "
                "expected '@scope/package/Product'."
            )
        return ProductRef(f"{parts[0]}/{parts[1]}", parts[2])
    if len(parts) != 2 or not all(parts):
        raise ConfigurationError(
            f"Invalid dependency reference {raw!r}, expected 'package/Product'."
        )
    return ProductRef(parts[0], parts[1])


@define(frozen=True, slots=True)
class VersionRequirement:
    kind: str = field(validator=in_(VERSION_REQUIREMENT_KINDS))
    value: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        kinds = [kind for kind in VERSION_REQUIREMENT_KINDS if kind in data]
        if len(kinds) != 1:
            raise ConfigurationError(
                f"Invalid remote package version specification: {json.dumps(data)}"
            )
        return cls(kind=kinds[0], value=str(data[kinds[0]]))


def derive_package_name_from_url(url: str) -> str:
    """`https://github.com/airbnb/lottie-spm.git` -> `lottie-spm`."""
    name = url.rstrip("/").rsplit("/", 1)[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return name


@define(frozen=True, slots=True)
class RemotePackageRef:
    url: str
    version: VersionRequirement
    product_name: str
    package_name: str | None = None

    @property
    def resolved_package_name(self) -> str:
        return self.package_name or derive_package_name_from_url(self.url)


@define(frozen=True, slots=True)
class FlagVariant:
    c: tuple[str, ...] = ()
    cxx: tuple[str, ...] = ()

    @classmethod
    def parse(cls, raw: Any) -> Self:
        if raw is None:
            return cls()
        if isinstance(raw, list):
            flags = tuple(str(flag) for flag in raw)
            return cls(c=flags, cxx=flags)
        if isinstance(raw, dict):
            unknown = set(raw) - {"c", "cxx"}
            if unknown:
                raise ConfigurationError(
                    f"Unknown compiler flag language keys: {sorted(unknown)}"
                )
            return cls(
                c=tuple(str(flag) for flag in raw.get("c", [])),
                cxx=tuple(str(flag) for flag in raw.get("cxx", [])),
            )
        raise ConfigurationError(f"Invalid compiler flags value: {raw!r}")


@define(frozen=True, slots=True)
class ResolvedFlags:
    c: tuple[str, ...]
    cxx: tuple[str, ...]


@define(frozen=True, slots=True)
class CompilerFlags:
    common: FlagVariant = field(factory=FlagVariant)
    debug: FlagVariant = field(factory=FlagVariant)
    release: FlagVariant = field(factory=FlagVariant)

    @classmethod
    def parse(cls, raw: Any) -> Self:
        if isinstance(raw, list):
            return cls(common=FlagVariant.parse(raw))
        if isinstance(raw, dict):
            unknown = set(raw) - {"common", "debug", "release"}
            if unknown:
                raise ConfigurationError(
                    f"Unknown compiler flag sections: {sorted(unknown)}"
                )
            return cls(
                common=FlagVariant.parse(raw.get("common")),
                debug=FlagVariant.parse(raw.get("debug")),
                release=FlagVariant.parse(raw.get("release")),
            )
        raise ConfigurationError(f"Invalid compiler flags value: {raw!r}")

    def resolve(self, flavor: BuildFlavor) -> ResolvedFlags:
        specific = self.debug if flavor is BuildFlavor.DEBUG else self.release
        return ResolvedFlags(
            c=self.common.c + specific.c,
            cxx=self.common.cxx + specific.cxx,
        )


@define(frozen=True, slots=True)
class FileMapping:
    source: str
    destination: str
    kind: str = field(default="source", validator=in_(("source", "header")))

    def destination_for(self, filename: str) -> str:
        return self.destination.replace("{filename}", filename)


@define(frozen=True, slots=True)
class ResourceRule:
    path: str
    rule: str = field(default="process", validator=in_(("process", "copy")))


@define(frozen=True, slots=True)
class Target:
    name: str
    kind: TargetKind
    path: str
    dependencies: tuple[str, ...] = ()
    module_name: str | None = None
    file_mappings: tuple[FileMapping, ...] = ()
    include_directories: tuple[str, ...] = ()
    resources: tuple[ResourceRule, ...] = ()
    defines: tuple[str, ...] = ()
    compiler_flags: CompilerFlags | None = None
    linked_frameworks: tuple[str, ...] = ()
    linker_flags: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    public_headers: bool = True

    @property
    def is_binary(self) -> bool:
        return self.kind is TargetKind.FRAMEWORK


@define(frozen=True, slots=True)
class Product:
    name: str
    platforms: tuple[str, ...]
    targets: tuple[Target, ...]
    external_dependencies: tuple[DependencyRef, ...] = ()
    remote_packages: tuple[RemotePackageRef, ...] = ()
    swift_language_versions: tuple[str, ...] = ()

    @property
    def contains_swift(self) -> bool:
        return any(target.kind is TargetKind.SWIFT for target in self.targets)

    def target_named(self, name: str) -> Target | None:
        return next((t for t in self.targets if t.name == name), None)


@define(frozen=True, slots=True)
class PackageSource:
    name: str
    version: str
    path: Path
    build_path: Path
    products: tuple[Product, ...]

    def product_named(self, name: str) -> Product | None:
        return next((p for p in self.products if p.name == name), None)


@define(frozen=True, slots=True)
class XCFrameworkSlice:
    slice_id: str
    framework_name: str
    framework_path: Path
    binary_path: Path
    sdk_name: str
