"""Split diagram source into logical pages on newpage markers."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional

# Must be preceded and followed by a newline; the trailing newline is consumed with the marker.
NEW_PAGE_PATTERN = re.compile(r"\n\s*@?(newpage)([ \t]+[^\n]+|[ \t]*)(?=\n)", re.IGNORECASE)


@dataclass(frozen=True)
class PageFragment:
    """One logical page of source text.

    ``offset`` is the position of ``text`` inside the original document and ``title`` is
    the text that followed the marker opening this page, if any.
    """

    text: str
    offset: int
    index: int
    title: Optional[str] = None

    @property
    def end(self) -> int:
        return self.offset + len(self.text)


def split_pages(source: str) -> List[PageFragment]:
    fragments: List[PageFragment] = []
    start = 0
    title: Optional[str] = None
    for match in NEW_PAGE_PATTERN.finditer(source):
        # back-to-back markers share a newline, leaving an empty page at the next match
        start = min(start, match.start())
        fragments.append(
            PageFragment(source[start : match.start()], start, len(fragments), title)
        )
        title = match.group(2).strip() or None
        # skip the newline guaranteed by the lookahead
        start = match.end() + 1
    fragments.append(PageFragment(source[start:], start, len(fragments), title))
    return fragments
