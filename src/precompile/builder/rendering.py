"""Jinja2 environment shared by every generated text artifact."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import jinja2

_TEMPLATE_DIR = Path(__file__).parent / "templates"


def swift_string(value: Any) -> str:
    """Escapes a value for a double-quoted Swift string literal."""
    return str(value).replace("\\", "\\\\").replace('"', '\\"')


def shell_quote(value: Any) -> str:
    return "'" + str(value).replace("'", "'\"'\"'") + "'"


def get_template_env(
    filters: dict[str, Callable[..., Any]] | None = None,
    tests: dict[str, Callable[..., bool]] | None = None,
) -> jinja2.Environment:
    env = jinja2.Environment(
        loader=jinja2.FileSystemLoader(_TEMPLATE_DIR),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=jinja2.StrictUndefined,
    )
    env.filters["swift_str"] = swift_string
    env.filters["shell_quote"] = shell_quote
    env.filters.update(filters or {})
    env.tests.update(tests or {})
    return env


def write_if_changed(path: Path, content: str) -> bool:
    """Writes `content` unless the file already holds it; returns whether it wrote."""
    if path.exists() and path.read_text() == content:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return True
