"""Apply LSP content changes to document text."""

import re
from typing import Any, Dict, Iterable, List

# Lines including their terminator; LSP only knows \n, \r\n and \r.
_LINE_RE = re.compile(r".*?(?:\r\n|\r|\n)|.+$", re.DOTALL)


def split_lines(text: str) -> List[str]:
    """Split text into lines, keeping the line endings."""
    return _LINE_RE.findall(text)


def position_to_offset(text: str, position: Dict[str, int]) -> int:
    """Convert an LSP position to a string offset.

    Characters are counted in UTF-16 code units. Positions past the end of a
    line clamp to the line end, positions past the last line to the text end.

    Args:
        text: The document text.
        position: `{"line": ..., "character": ...}`, both 0-indexed.

    Returns:
        Offset into `text`.
    """
    line = position["line"]
    character = position["character"]
    lines = split_lines(text)
    if line >= len(lines):
        return len(text)

    offset = sum(len(lines[i]) for i in range(line))
    units = 0
    for index, char in enumerate(lines[line]):
        if units >= character or char in "\r\n":
            return offset + index
        units += 2 if ord(char) > 0xFFFF else 1
    return offset + len(lines[line])


def apply_content_changes(text: str, changes: Iterable[Dict[str, Any]]) -> str:
    """Apply `TextDocumentContentChangeEvent`s in order.

    A change without a range replaces the whole text.

    Args:
        text: The current document text.
        changes: The content changes, in the order the editor produced them.

    Returns:
        The new document text.
    """
    for change in changes:
        change_range = change.get("range")
        if change_range is None:
            text = change["text"]
            continue
        start_offset = position_to_offset(text, change_range["start"])
        end_offset = position_to_offset(text, change_range["end"])
        if end_offset < start_offset:
            raise ValueError(f"Change range ends before it starts: {change_range}")
        text = text[:start_offset] + change["text"] + text[end_offset:]
    return text
