"""
Virtual path rules.

Paths are "/"-delimited with no leading or trailing slash ("misc/Notes/a.md").
Everything that looks at a path suffix or prefix goes through this module.
"""

from driveshelf.models.files import FileType

SEPARATOR = "/"
SOURCE_SUFFIX = ".source.md"
INDEXED_PREFIXES = ("misc/", "history/")


def normalize(path: str) -> str:
    parts = [p for p in path.strip().split(SEPARATOR) if p]
    if not parts:
        raise ValueError(f"Invalid path: {path!r}")
    if any(p in (".", "..") for p in parts):
        raise ValueError(f"Relative segments are not allowed: {path!r}")
    return SEPARATOR.join(parts)


def split(path: str) -> list[str]:
    return path.split(SEPARATOR)


def depth(path: str) -> int:
    return len(split(path))


def parent_path(path: str) -> str:
    """Parent path, or "" for a top-level path."""
    head, _, _ = path.rpartition(SEPARATOR)
    return head


def base_name(path: str) -> str:
    return path.rsplit(SEPARATOR, 1)[-1]


def join(parent: str, name: str) -> str:
    return f"{parent}{SEPARATOR}{name}" if parent else name


def ancestors(path: str) -> list[str]:
    """Ancestor paths, outermost first: "a/b/c" -> ["a", "a/b"]."""
    parts = split(path)
    return [SEPARATOR.join(parts[:i]) for i in range(1, len(parts))]


def subtree_prefix(path: str) -> str:
    return path + SEPARATOR


def is_descendant(path: str, folder: str) -> bool:
    return path.startswith(subtree_prefix(folder))


def rewrite_prefix(path: str, old: str, new: str) -> str:
    """Move ``path`` from under ``old`` to under ``new``."""
    if path == old:
        return new
    if not is_descendant(path, old):
        raise ValueError(f"{path!r} is not inside {old!r}")
    return new + path[len(old):]


def is_source_path(path: str) -> bool:
    return path.endswith(SOURCE_SUFFIX)


def shadow_path_for(path: str) -> str:
    """Path of the extracted-text record paired with a binary file."""
    return path + SOURCE_SUFFIX


def record_type_for(path: str) -> FileType:
    return FileType.source if is_source_path(path) else FileType.file


def is_indexable(path: str) -> bool:
    return path.startswith(INDEXED_PREFIXES) or is_source_path(path)


def display_name(path: str) -> str:
    """File name without extension, used when quoting sources back to a reader."""
    name = base_name(path)
    if is_source_path(name):
        name = name[: -len(SOURCE_SUFFIX)]
    for ext in (".pdf", ".md", ".txt"):
        if name.lower().endswith(ext):
            return name[: -len(ext)]
    return name
