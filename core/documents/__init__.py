"""
Specification documents: frontmatter parsing, rendering and discovery.
"""

from .frontmatter import (
    parse_document,
    render_document,
    apply_updates,
    set_field,
)
from .repository import DocumentRepository

__all__ = [
    "parse_document",
    "render_document",
    "apply_updates",
    "set_field",
    "DocumentRepository",
]
