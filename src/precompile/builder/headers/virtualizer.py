"""
Virtual header filesystem for stock binaries.

A stock xcframework ships its headers flattened as `Headers/<module>/<name>.h`,
while consumers import them by nested paths such as `<yoga/style/Style.h>`.
The virtualizer writes a clang VFS overlay that maps every nested path either
to the flat stock header or, for headers the stock layout cannot represent, to
a staging directory next to the bundle. The stock bundle is never modified.
"""

from collections.abc import Iterable
from pathlib import Path
import shutil
from typing import Any

from pyvider.telemetry import logger
import yaml

from ..exceptions import ConfigurationError
from ..rendering import write_if_changed
from .mapper import HeaderMapping, HeaderModule, collect_header_mappings

ROOT_PATH_PLACEHOLDER = "${ROOT_PATH}"
HEADER_SUFFIXES = (".h",)


def overlay_template_path(output_dir: Path, name: str) -> Path:
    return output_dir / f"{name}-VFS-template.yaml"


def staging_dir_name_for(name: str) -> str:
    return f"{name}-extra-headers"


def is_overlay_prepared(output_dir: Path, name: str) -> bool:
    return overlay_template_path(output_dir, name).exists()


def inventory_stock_headers(xcframework_path: Path) -> dict[str, set[str]]:
    """Module directory name -> header basenames present in the stock bundle."""
    headers_dir = xcframework_path / "Headers"
    if not headers_dir.is_dir():
        raise ConfigurationError(
            f"Headers directory not found in xcframework: {headers_dir}"
        )
    inventory: dict[str, set[str]] = {}
    for module_dir in sorted(headers_dir.iterdir()):
        if not module_dir.is_dir():
            continue
        inventory[module_dir.name] = {
            f.name
            for f in module_dir.iterdir()
            if f.is_file() and f.suffix in HEADER_SUFFIXES
        }
    return inventory


def find_duplicate_basenames(
    mappings: dict[str, list[HeaderMapping]],
) -> dict[str, set[str]]:
    """
    Basenames shared by more than one logical path within a module. A flat
    layout holds one file per basename, so these can never be served from it.
    """
    duplicates: dict[str, set[str]] = {}
    for module, module_mappings in mappings.items():
        paths_by_basename: dict[str, set[str]] = {}
        for mapping in module_mappings:
            paths_by_basename.setdefault(mapping.basename, set()).add(
                mapping.logical_path
            )
        shared = {name for name, paths in paths_by_basename.items() if len(paths) > 1}
        if shared:
            duplicates[module] = shared
    return duplicates


def needs_staging(
    mapping: HeaderMapping,
    stock_headers: dict[str, set[str]],
    duplicates: dict[str, set[str]],
) -> bool:
    if mapping.basename in duplicates.get(mapping.module, set()):
        return True
    return mapping.basename not in stock_headers.get(mapping.module, set())


def stage_headers(
    staging_dir: Path,
    mappings: dict[str, list[HeaderMapping]],
    stock_headers: dict[str, set[str]],
    duplicates: dict[str, set[str]],
) -> int:
    """Rebuilds `staging_dir` from scratch and returns the number of staged files."""
    if staging_dir.exists():
        shutil.rmtree(staging_dir)

    staged = 0
    for module, module_mappings in mappings.items():
        for mapping in module_mappings:
            if not needs_staging(mapping, stock_headers, duplicates):
                continue
            destination = staging_dir / module / mapping.target
            if destination.exists():
                continue
            if not mapping.source.exists():
                logger.warning(
                    "Header source disappeared before staging",
                    source=str(mapping.source),
                )
                continue
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(mapping.source, destination)
            staged += 1
    return staged


def _external_contents(
    mapping: HeaderMapping,
    stock_headers: dict[str, set[str]],
    duplicates: dict[str, set[str]],
    staging_dir_name: str,
) -> str:
    if needs_staging(mapping, stock_headers, duplicates):
        return (
            f"{ROOT_PATH_PLACEHOLDER}/../{staging_dir_name}/"
            f"{mapping.module}/{mapping.target}"
        )
    return f"{ROOT_PATH_PLACEHOLDER}/Headers/{mapping.module}/{mapping.basename}"


def _unique_leaves(mappings: Iterable[HeaderMapping]) -> list[HeaderMapping]:
    seen: dict[str, HeaderMapping] = {}
    for mapping in mappings:
        key = mapping.logical_path.casefold()
        previous = seen.get(key)
        if previous is None:
            seen[key] = mapping
        elif previous.logical_path != mapping.logical_path:
            raise ConfigurationError(
                f"Header paths '{previous.logical_path}' and "
                f"'{mapping.logical_path}' differ only by case."
            )
        else:
            logger.debug(
                "Header already mapped, keeping first occurrence",
                path=mapping.logical_path,
                ignored=str(mapping.source),
            )
    return list(seen.values())


def _new_dir(name: str) -> dict[str, Any]:
    return {"name": name, "dirs": {}, "files": {}}


def _insert(tree: dict[str, Any], logical_path: str, contents: str) -> None:
    *directories, filename = logical_path.split("/")
    node = tree
    for part in directories:
        key = part.casefold()
        if key in node["files"]:
            raise ConfigurationError(
                f"'{logical_path}' nests under a path that is also a header."
            )
        node = node["dirs"].setdefault(key, _new_dir(part))
    if filename.casefold() in node["dirs"]:
        raise ConfigurationError(
            f"'{logical_path}' clashes with a directory of the same name."
        )
    node["files"][filename.casefold()] = (filename, contents)


def _emit(node: dict[str, Any]) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = [
        {"name": name, "type": "file", "external-contents": contents}
        for name, contents in sorted(node["files"].values())
    ]
    for child in sorted(node["dirs"].values(), key=lambda d: d["name"]):
        entries.append(
            {"name": child["name"], "type": "directory", "contents": _emit(child)}
        )
    return entries


def build_overlay(
    mappings: dict[str, list[HeaderMapping]],
    stock_headers: dict[str, set[str]],
    duplicates: dict[str, set[str]],
    staging_dir_name: str,
) -> dict[str, Any]:
    """One file leaf per distinct logical path, wrapped in `${ROOT_PATH}/Headers`."""
    all_mappings = [m for module_mappings in mappings.values() for m in module_mappings]
    tree = _new_dir("")
    for mapping in _unique_leaves(all_mappings):
        _insert(
            tree,
            mapping.logical_path,
            _external_contents(mapping, stock_headers, duplicates, staging_dir_name),
        )
    return {
        "version": 0,
        "case-sensitive": False,
        "roots": [
            {
                "name": f"{ROOT_PATH_PLACEHOLDER}/Headers",
                "type": "directory",
                "contents": _emit(tree),
            }
        ],
    }


def render_overlay(overlay: dict[str, Any]) -> str:
    return yaml.safe_dump(overlay, sort_keys=False, default_flow_style=False)


def prepare_stock_framework(
    xcframework_path: Path,
    source_root: Path,
    modules: list[HeaderModule],
    name: str | None = None,
) -> Path:
    """
    Stages the headers the stock bundle lacks and writes the overlay template
    next to the bundle. Returns the template path.
    """
    if not xcframework_path.exists():
        raise ConfigurationError(f"xcframework not found at: {xcframework_path}")
    if not source_root.is_dir():
        raise ConfigurationError(f"Header source tree not found at: {source_root}")

    name = name or xcframework_path.name.removesuffix(".xcframework")
    output_dir = xcframework_path.parent
    staging_dir_name = staging_dir_name_for(name)

    logger.info(f"Collecting header mappings for {name}...")
    mappings = collect_header_mappings(source_root, modules)
    stock_headers = inventory_stock_headers(xcframework_path)
    duplicates = find_duplicate_basenames(mappings)

    staged = stage_headers(
        output_dir / staging_dir_name, mappings, stock_headers, duplicates
    )
    logger.info(f"Staged {staged} headers to {staging_dir_name}/")

    template_path = overlay_template_path(output_dir, name)
    overlay = build_overlay(mappings, stock_headers, duplicates, staging_dir_name)
    template_path.write_text(render_overlay(overlay))
    logger.info(f"Wrote VFS overlay template {template_path.name}")
    return template_path


def materialize_overlay(template_path: Path, root_path: Path, destination: Path) -> bool:
    """Substitutes the root placeholder; writes only when the content changed."""
    content = template_path.read_text().replace(
        ROOT_PATH_PLACEHOLDER, root_path.as_posix()
    )
    if not write_if_changed(destination, content):
        return False
    logger.debug("Materialized VFS overlay", path=str(destination))
    return True
