"""
Classification of remote entries.

Each entry is classified once, by mime type, and the engine dispatches on
the result instead of re-inspecting names or mime types at each step.
"""

import enum

from driveshelf.sync.drive import DriveEntry

TEXT_MIME_TYPES = {"application/json", "application/javascript"}
SHADOWED_MIME_TYPES = {"application/pdf"}


class EntryKind(str, enum.Enum):
    FOLDER = "folder"                     # container; materialized as a folder record
    TEXT = "text"                         # downloaded as text into the record
    SHADOWED_BINARY = "shadowed_binary"   # binary kept as-is plus an extracted .source.md
    OPAQUE = "opaque"                     # tracked by path and id only, no content


def classify_entry(entry: DriveEntry) -> EntryKind:
    if entry.is_container:
        return EntryKind.FOLDER
    mime = entry.mime_type or ""
    if mime.startswith("text/") or mime in TEXT_MIME_TYPES:
        return EntryKind.TEXT
    if mime in SHADOWED_MIME_TYPES:
        return EntryKind.SHADOWED_BINARY
    return EntryKind.OPAQUE
