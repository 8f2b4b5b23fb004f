"""Accounting XML dialect: request builders, response parser and job dispatch."""

from .builders import (
    build_inventory_query,
    build_inventory_adjustment,
    normalize_adjustment_line,
    format_quantity
)
from .parser import (
    parse_document,
    parse_inventory_items,
    extract_status_summaries,
    find_status,
    parse_adjustment_request
)
from .dispatcher import render_job

__all__ = [
    "build_inventory_query",
    "build_inventory_adjustment",
    "normalize_adjustment_line",
    "format_quantity",
    "parse_document",
    "parse_inventory_items",
    "extract_status_summaries",
    "find_status",
    "parse_adjustment_request",
    "render_job",
]
