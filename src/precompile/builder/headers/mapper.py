"""
Maps the headers declared by the modules of a stock source tree to the
nested paths consumers import them by.
"""

import fnmatch
import json
from pathlib import Path
import re
from typing import Any, Self

from attrs import define, field
from pyvider.telemetry import logger

from ..exceptions import ConfigurationError

_BRACE_RE = re.compile(r"\{([^{}]*)\}")


@define(frozen=True, slots=True)
class HeaderModule:
    name: str
    root: str = "."
    header_dir: str = ""
    header_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()
    preserve_paths: tuple[str, ...] = ()
    sub_modules: tuple["HeaderModule", ...] = ()
    disabled: bool = False

    @property
    def module_name(self) -> str:
        """Directory name the module's headers live under in the stock binary."""
        return self.name.replace("-", "_")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        if not isinstance(data, dict) or not data.get("name"):
            raise ConfigurationError(f"Header module declaration needs a name: {data!r}")

        def _strings(key: str) -> tuple[str, ...]:
            value = data.get(key, [])
            if isinstance(value, str):
                return (value,)
            if not isinstance(value, list):
                raise ConfigurationError(
                    f"'{key}' of header module {data['name']} must be a list."
                )
            return tuple(str(v) for v in value)

        return cls(
            name=str(data["name"]),
            root=str(data.get("root", ".")),
            header_dir=str(data.get("headerDir") or ""),
            header_patterns=_strings("headers"),
            exclude_patterns=_strings("exclude"),
            preserve_paths=_strings("preservePaths"),
            sub_modules=tuple(cls.from_dict(sub) for sub in data.get("subModules", [])),
            disabled=bool(data.get("disabled", False)),
        )


@define(frozen=True, slots=True)
class HeaderMapping:
    source: Path
    target: str
    module: str
    header_dir: str = ""

    @property
    def basename(self) -> str:
        return self.target.rsplit("/", 1)[-1]

    @property
    def logical_path(self) -> str:
        """Path a consumer writes in `#include <...>`."""
        if "/" not in self.target and not self.header_dir:
            return f"{self.module}/{self.target}"
        return self.target


@define(slots=True)
class _Resolved:
    header_dir: str
    preserve_paths: tuple[str, ...] = field(factory=tuple)


def load_header_modules(declaration_path: Path) -> list[HeaderModule]:
    """Reads a `{"modules": [...]}` JSON declaration."""
    try:
        data = json.loads(declaration_path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(
            f"Could not read header declarations from {declaration_path}: {e}"
        ) from e
    modules = data.get("modules") if isinstance(data, dict) else None
    if not isinstance(modules, list):
        raise ConfigurationError(
            f"{declaration_path} must contain a 'modules' list."
        )
    return [HeaderModule.from_dict(m) for m in modules]


def expand_braces(pattern: str) -> list[str]:
    """`*.{h,hpp}` -> `['*.h', '*.hpp']`; nested alternatives are expanded too."""
    match = _BRACE_RE.search(pattern)
    if not match:
        return [pattern]
    head, tail = pattern[: match.start()], pattern[match.end() :]
    expanded: list[str] = []
    for alternative in match.group(1).split(","):
        for result in expand_braces(f"{head}{alternative}{tail}"):
            if result not in expanded:
                expanded.append(result)
    return expanded


def _is_excluded(relative: str, patterns: tuple[str, ...]) -> bool:
    name = relative.rsplit("/", 1)[-1]
    for pattern in patterns:
        for alternative in expand_braces(pattern):
            if fnmatch.fnmatch(relative, alternative) or fnmatch.fnmatch(
                name, alternative
            ):
                return True
    return False


def glob_headers(
    module_root: Path, patterns: tuple[str, ...], exclude: tuple[str, ...] = ()
) -> list[Path]:
    """Files matched by any pattern and no exclusion, in a stable order."""
    found: dict[Path, None] = {}
    for pattern in patterns:
        for alternative in expand_braces(pattern):
            for path in sorted(module_root.glob(alternative)):
                if not path.is_file():
                    continue
                relative = path.relative_to(module_root).as_posix()
                if _is_excluded(relative, exclude):
                    continue
                found.setdefault(path, None)
    return list(found)


def _map_module(
    module: HeaderModule,
    module_root: Path,
    owner: str,
    inherited: list[_Resolved],
) -> list[HeaderMapping]:
    if module.disabled:
        logger.debug("Skipping disabled header module", module=module.name)
        return []

    header_dir = module.header_dir or next(
        (parent.header_dir for parent in inherited if parent.header_dir), ""
    )
    preserve_paths = module.preserve_paths or next(
        (parent.preserve_paths for parent in inherited if parent.preserve_paths), ()
    )

    preserved = (
        set(glob_headers(module_root, preserve_paths, module.exclude_patterns))
        if preserve_paths
        else set()
    )

    mappings = []
    for header in glob_headers(
        module_root, module.header_patterns, module.exclude_patterns
    ):
        if header in preserved:
            target = header.relative_to(module_root).as_posix()
        elif header_dir:
            target = f"{header_dir.strip('/')}/{header.name}"
        else:
            target = header.name
        mappings.append(
            HeaderMapping(
                source=header, target=target, module=owner, header_dir=header_dir
            )
        )

    # Nearest declaring ancestor comes first.
    lineage = [_Resolved(module.header_dir, module.preserve_paths), *inherited]
    for sub_module in module.sub_modules:
        mappings.extend(_map_module(sub_module, module_root, owner, lineage))
    return mappings


def collect_header_mappings(
    source_root: Path, modules: list[HeaderModule]
) -> dict[str, list[HeaderMapping]]:
    """Returns module name -> header mappings for every enabled module."""
    result: dict[str, list[HeaderMapping]] = {}
    for module in modules:
        if module.disabled:
            logger.debug("Skipping disabled header module", module=module.name)
            continue
        module_root = (source_root / module.root).resolve()
        if not module_root.is_dir():
            raise ConfigurationError(
                f"Header module {module.name} root not found: {module_root}"
            )
        mappings = _map_module(module, module_root, module.module_name, [])
        result.setdefault(module.module_name, []).extend(mappings)
        logger.debug(
            "Collected module headers", module=module.name, count=len(mappings)
        )
    return result
