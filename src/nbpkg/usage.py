from __future__ import annotations

import ast
import logging
from typing import Iterable

logger = logging.getLogger(__name__)

# Functions in `nbpkg.api` (also exported as `nbpkg.activate` and `nbpkg.add`);
# referencing one means a document manages its own environment.
DIRECT_ENTRY_POINTS = frozenset(
    {
        "nbpkg.activate",
        "nbpkg.api.activate",
        "nbpkg.add",
        "nbpkg.api.add",
    }
)


def uses_managed_packages(references: Iterable[str]) -> bool:
    """True unless some cell references one of the direct package-manager entry points."""
    return not any(ref in DIRECT_ENTRY_POINTS for ref in references)


def _parse(source: str) -> ast.Module | None:
    try:
        return ast.parse(source)
    except SyntaxError as e:
        logger.debug("Skipping cell with syntax error: %s", e)
        return None


def external_package_names(sources: Iterable[str]) -> set[str]:
    """Top-level package names imported by absolute import statements across all cells."""
    names: set[str] = set()
    for source in sources:
        tree = _parse(source)
        if tree is None:
            continue
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                names.update(alias.name.split(".", 1)[0] for alias in node.names)
            elif isinstance(node, ast.ImportFrom) and node.level == 0 and node.module:
                names.add(node.module.split(".", 1)[0])
    return names


def _dotted_name(node: ast.AST) -> str | None:
    parts: list[str] = []
    while isinstance(node, ast.Attribute):
        parts.append(node.attr)
        node = node.value
    if not isinstance(node, ast.Name):
        return None
    parts.append(node.id)
    return ".".join(reversed(parts))


def collect_references(sources: Iterable[str]) -> set[str]:
    """
    Dotted names referenced anywhere in the cells, e.g. ``nbpkg.api.add`` for
    ``nbpkg.api.add("numpy")`` or ``from nbpkg.api import add``. Every prefix of an
    attribute chain is included.
    """
    refs: set[str] = set()
    for source in sources:
        tree = _parse(source)
        if tree is None:
            continue
        for node in ast.walk(tree):
            if isinstance(node, (ast.Attribute, ast.Name)):
                name = _dotted_name(node)
                if name is not None:
                    refs.add(name)
            elif isinstance(node, ast.ImportFrom) and node.level == 0 and node.module:
                refs.update(f"{node.module}.{alias.name}" for alias in node.names)
    return refs
