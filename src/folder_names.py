"""
Folder Name Translation

Maps folder paths between two accounts whose servers use different hierarchy
separators (e.g. "INBOX.Archive" on one side, "INBOX/Archive" on the other).
Segments are kept verbatim; only the separator changes.

Special folders that servers name differently ("Sent Items" vs "Sent") are not
guessed. An explicit folder map can be given, whose entries rename leading path
segments before the separator substitution.
"""

from __future__ import annotations


def split_path(path: str, separator: str | None) -> list[str]:
    if not separator:
        return [path]
    return path.split(separator)


def join_path(segments, separator: str | None) -> str:
    segments = list(segments)
    if not separator:
        if len(segments) > 1:
            raise ValueError(f"Cannot represent nested path {segments!r} without a hierarchy separator")
        return segments[0] if segments else ""
    return separator.join(segments)


def translate(path: str, source_separator: str | None, target_separator: str | None) -> str:
    """Re-join the segments of a source path with the target separator."""
    if source_separator == target_separator:
        return path
    return join_path(split_path(path, source_separator), target_separator)


def parse_folder_map(entries) -> dict[str, str]:
    """Parse "source=target" strings into a mapping.

    Entries may also be joined with ';' as in the FOLDER_MAP environment variable.
    Both sides use "/" as the segment separator.
    """
    folder_map: dict[str, str] = {}
    for entry in entries or ():
        for item in entry.split(";"):
            item = item.strip()
            if not item:
                continue
            source, sep, target = item.partition("=")
            if not sep or not source.strip() or not target.strip():
                raise ValueError(f"Invalid folder map entry {item!r}, expected SOURCE=TARGET")
            folder_map[source.strip()] = target.strip()
    return folder_map


class FolderNameTranslator:
    """Translates folder paths between a source and a target account.

    ``folder_map`` maps source path prefixes to target path prefixes, both
    written with "/" between segments. The longest matching prefix wins, and
    only whole segments match.
    """

    MAP_SEPARATOR = "/"

    def __init__(self, source_separator, target_separator, folder_map=None):
        self.source_separator = source_separator
        self.target_separator = target_separator
        self._forward = self._compile(folder_map or {})
        self._reverse = self._compile({target: source for source, target in (folder_map or {}).items()})
        if len(self._reverse) != len(self._forward):
            raise ValueError("Folder map must not send two source folders to the same target folder")

    def _compile(self, mapping):
        compiled = [
            (tuple(source.split(self.MAP_SEPARATOR)), tuple(target.split(self.MAP_SEPARATOR)))
            for source, target in mapping.items()
        ]
        compiled.sort(key=lambda pair: len(pair[0]), reverse=True)
        return compiled

    @staticmethod
    def _remap(segments, compiled):
        for prefix, replacement in compiled:
            if tuple(segments[: len(prefix)]) == prefix:
                return list(replacement) + list(segments[len(prefix) :])
        return segments

    def to_target(self, source_path: str) -> str:
        segments = split_path(source_path, self.source_separator)
        return join_path(self._remap(segments, self._forward), self.target_separator)

    def to_source(self, target_path: str) -> str:
        segments = split_path(target_path, self.target_separator)
        return join_path(self._remap(segments, self._reverse), self.source_separator)

    def __repr__(self):
        return (
            f"FolderNameTranslator({self.source_separator!r} -> {self.target_separator!r}, "
            f"{len(self._forward)} mapped)"
        )
