"""
Stages the sources of one product into an isolated tree next to its
Package.swift: `<staging>/<Target>/...`, with public headers under
`<Target>/include/` and resources under `<Target>/resources/`.

Files are symlinked rather than copied; debug prefix maps translate the
staging paths back to the canonical source prefix.
"""

from collections.abc import Callable, Iterable
import fnmatch
from pathlib import Path
import shutil

from pyvider.telemetry import logger

from .compiler import staging_root
from .exceptions import ConfigurationError
from .models import PackageSource, Product, Target, TargetKind

HEADER_SUFFIXES = frozenset({".h", ".hh", ".hpp", ".hxx", ".inc"})
GENERATED_TARGET_PREFIX = ".build/"


def create_ignore_func(
    root: Path, patterns: Iterable[str]
) -> Callable[[Path], bool]:
    """Returns a predicate matching files excluded by any pattern, relative to root."""
    patterns = list(patterns)

    def ignored(path: Path) -> bool:
        rel_path_str = path.relative_to(root).as_posix()
        return any(
            fnmatch.fnmatch(rel_path_str, pattern) or fnmatch.fnmatch(path.name, pattern)
            for pattern in patterns
        )

    return ignored


def target_source_root(package: PackageSource, target: Target) -> Path:
    if target.path.startswith(GENERATED_TARGET_PREFIX):
        return package.build_path / target.path[len(GENERATED_TARGET_PREFIX) :]
    return package.path / target.path


def _link(source: Path, destination: Path) -> None:
    if destination.exists() or destination.is_symlink():
        return
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.symlink_to(source.resolve())


def _stage_mapped(source_root: Path, target: Target, target_dir: Path) -> int:
    staged = 0
    for mapping in target.file_mappings:
        matches = [p for p in sorted(source_root.glob(mapping.source)) if p.is_file()]
        if not matches:
            logger.warning(
                "File mapping matched nothing",
                target=target.name,
                pattern=mapping.source,
            )
        base = target_dir / "include" if mapping.kind == "header" else target_dir
        for match in matches:
            _link(match, base / mapping.destination_for(match.name))
            staged += 1
    return staged


def _stage_tree(
    source_root: Path, product: Product, target: Target, target_dir: Path
) -> int:
    ignored = create_ignore_func(source_root, target.exclude)
    header_dir = target_dir / "include" / (target.module_name or product.name)
    staged = 0
    for path in sorted(source_root.rglob("*")):
        if not path.is_file() or ignored(path):
            continue
        relative = path.relative_to(source_root)
        if target.kind.is_c_family and path.suffix in HEADER_SUFFIXES:
            _link(path, header_dir / relative)
        else:
            _link(path, target_dir / relative)
        staged += 1
    return staged


def stage_target(
    package: PackageSource, product: Product, target: Target, staging_dir: Path
) -> Path:
    source_root = target_source_root(package, target)
    if not source_root.is_dir():
        raise ConfigurationError(
            f"Source folder of target {target.name} in {package.name}/{product.name} "
            f"not found: {source_root}"
        )

    target_dir = staging_dir / target.name
    if target_dir.exists():
        shutil.rmtree(target_dir)
    target_dir.mkdir(parents=True)

    if target.file_mappings:
        staged = _stage_mapped(source_root, target, target_dir)
    else:
        staged = _stage_tree(source_root, product, target, target_dir)

    for rule in target.resources:
        for match in sorted(package.path.glob(rule.path)):
            _link(match, target_dir / "resources" / match.name)

    if target.kind is not TargetKind.SWIFT:
        (target_dir / "include").mkdir(exist_ok=True)

    logger.debug("Staged target sources", target=target.name, files=staged)
    return target_dir


def stage_product_sources(package: PackageSource, product: Product) -> Path:
    """
    Restages every source target. Package.swift in the same directory is left
    alone so an unchanged manifest keeps its timestamp.
    """
    staging_dir = staging_root(package, product)
    staging_dir.mkdir(parents=True, exist_ok=True)

    declared = {t.name for t in product.targets if not t.is_binary}
    for stale in staging_dir.iterdir():
        if stale.is_dir() and not stale.name.startswith(".") and stale.name not in declared:
            shutil.rmtree(stale)

    for target in product.targets:
        if not target.is_binary:
            stage_target(package, product, target, staging_dir)
    return staging_dir
