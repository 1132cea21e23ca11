"""Orchestrator settings read from the `[tool.precompile]` table of pyproject.toml."""

from pathlib import Path
import tomllib
from typing import Any, Self

from attrs import define, evolve, field

from .exceptions import ConfigurationError

DEFAULT_CANONICAL_SOURCE_PREFIX = "/precompile-src"


@define(frozen=True, slots=True)
class Settings:
    packages_dir: Path
    build_dir: Path
    cache_dir: Path
    repository_root: Path
    canonical_source_prefix: str = DEFAULT_CANONICAL_SOURCE_PREFIX
    build_timeout: float | None = 3600.0
    verify_timeout: float = 10.0
    dwarf_timeout: float = 30.0
    max_download_workers: int = 4
    react_native_version: str | None = None
    versions: dict[str, str] = field(factory=dict)
    local_tarballs: dict[str, str] = field(factory=dict)
    # Stock source tree and header module declarations used to prepare the
    # VFS overlay of cache artifacts that ship one.
    header_source_root: Path | None = None
    header_modules_file: Path | None = None

    @classmethod
    def for_root(cls, root: Path) -> Self:
        """Defaults for a repository laid out as `packages/` plus `.precompile/`."""
        root = root.resolve()
        return cls(
            packages_dir=root / "packages",
            build_dir=root / ".precompile" / "build",
            cache_dir=root / ".precompile" / "cache",
            repository_root=root,
        )

    @classmethod
    def from_pyproject(cls, pyproject_path: Path) -> Self:
        try:
            with pyproject_path.open("rb") as f:
                pyproject_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigurationError(f"Could not read {pyproject_path}: {e}") from e

        conf = pyproject_data.get("tool", {}).get("precompile")
        if conf is None:
            raise ConfigurationError(
                f"A [tool.precompile] section was not found in {pyproject_path}."
            )
        return cls.from_dict(conf, pyproject_path.parent)

    @classmethod
    def from_dict(cls, conf: dict[str, Any], manifest_dir: Path) -> Self:
        manifest_dir = manifest_dir.resolve()
        defaults = cls.for_root(manifest_dir)

        def _path(key: str, default: Path) -> Path:
            value = conf.get(key)
            return (manifest_dir / value).resolve() if value else default

        def _optional_path(key: str) -> Path | None:
            value = conf.get(key)
            return (manifest_dir / value).resolve() if value else None

        versions = conf.get("versions", {})
        if not isinstance(versions, dict):
            raise ConfigurationError("[tool.precompile.versions] must be a table.")
        local_tarballs = conf.get("local_tarballs", {})
        if not isinstance(local_tarballs, dict):
            raise ConfigurationError(
                "[tool.precompile.local_tarballs] must be a table."
            )

        try:
            return cls(
                packages_dir=_path("packages_dir", defaults.packages_dir),
                build_dir=_path("build_dir", defaults.build_dir),
                cache_dir=_path("cache_dir", defaults.cache_dir),
                repository_root=_path("repository_root", defaults.repository_root),
                canonical_source_prefix=conf.get(
                    "canonical_source_prefix", DEFAULT_CANONICAL_SOURCE_PREFIX
                ).rstrip("/"),
                build_timeout=_optional_float(
                    conf.get("build_timeout", defaults.build_timeout)
                ),
                verify_timeout=float(conf.get("verify_timeout", defaults.verify_timeout)),
                dwarf_timeout=float(conf.get("dwarf_timeout", defaults.dwarf_timeout)),
                max_download_workers=int(
                    conf.get("max_download_workers", defaults.max_download_workers)
                ),
                react_native_version=conf.get("react_native_version")
                or versions.get("react"),
                versions={str(k): str(v) for k, v in versions.items()},
                local_tarballs={
                    str(k): str(manifest_dir / v) for k, v in local_tarballs.items()
                },
                header_source_root=_optional_path("header_source_root"),
                header_modules_file=_optional_path("header_modules"),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid [tool.precompile] value: {e}") from e

    def with_overrides(self, **overrides: Any) -> Self:
        """Returns a copy with every non-None override applied."""
        return evolve(self, **{k: v for k, v in overrides.items() if v is not None})


def _optional_float(value: Any) -> float | None:
    """`0`, `false` and an empty value disable the timeout."""
    if value in (None, "", False, 0):
        return None
    return float(value)
