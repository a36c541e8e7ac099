"""
Materialized-path arithmetic for the module tree.

A module stores the names of its ancestors joined by the separator; roots
store "". These helpers are pure: they look only at the attributes of the
objects passed in and never touch the session, so ModuleTree can recompute
a whole subtree in memory before flushing it.

    root      path=""          depth=1
    └─ SD     path="/Root"     depth=2
       └─ OTC path="/Root/SD"  depth=3
"""

from testhub.core.exceptions import InvalidOperationError

DEFAULT_SEPARATOR = "/"


def child_path(parent, separator: str = DEFAULT_SEPARATOR) -> str:
    """Path a direct child of ``parent`` must carry ("" when parent is None)."""
    if parent is None:
        return ""
    return f"{parent.module_path or ''}{separator}{parent.name}"


def child_depth(parent) -> int:
    return 1 if parent is None else parent.depth + 1


def placement(parent, separator: str = DEFAULT_SEPARATOR) -> tuple[int, str]:
    """(depth, module_path) for a node placed directly under ``parent``."""
    return child_depth(parent), child_path(parent, separator)


def subtree_prefix(module, separator: str = DEFAULT_SEPARATOR) -> str:
    """Path shared by the direct children of ``module``.

    Every descendant path either equals this value or starts with it
    followed by the separator.
    """
    return child_path(module, separator)


def full_name(module, separator: str = DEFAULT_SEPARATOR) -> str:
    """Display path including the module itself, e.g. "/Root/SD/OTC"."""
    return child_path(module, separator)


def validate_name(name, separator: str = DEFAULT_SEPARATOR, max_length: int = 100,
                  module_id=None) -> str:
    """Return the stripped module name or raise InvalidOperationError.

    A name must be non-empty, fit the column and must not contain the path
    separator (it would make prefix scans ambiguous).
    """
    cleaned = (name or "").strip()
    if not cleaned:
        raise InvalidOperationError("TestModule", module_id, "name is required")
    if len(cleaned) > max_length:
        raise InvalidOperationError(
            "TestModule", module_id, f"name exceeds {max_length} characters"
        )
    if separator in cleaned:
        raise InvalidOperationError(
            "TestModule", module_id, f"name must not contain '{separator}'"
        )
    return cleaned
