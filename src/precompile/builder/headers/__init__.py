from .mapper import HeaderMapping, HeaderModule, collect_header_mappings, load_header_modules
from .virtualizer import (
    build_overlay,
    find_duplicate_basenames,
    inventory_stock_headers,
    materialize_overlay,
    prepare_stock_framework,
    render_overlay,
)

__all__ = [
    "HeaderMapping",
    "HeaderModule",
    "build_overlay",
    "collect_header_mappings",
    "find_duplicate_basenames",
    "inventory_stock_headers",
    "load_header_modules",
    "materialize_overlay",
    "prepare_stock_framework",
    "render_overlay",
]
