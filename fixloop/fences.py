"""Prose/code splitting for streamed fix reasoning.

The advisor streams prose followed by one fenced code block. Everything
before the first fence marker is narrative; everything inside the fence is
the candidate fix. Chunk boundaries are arbitrary, so a marker can arrive
split across chunks: FenceSplitter holds back a trailing partial marker until
the next chunk settles it. Concatenating everything feed() and finish()
return equals the text before the first marker, exactly.
"""

from __future__ import annotations

import re

FENCE = "```"

_FENCED_BLOCK = re.compile(r"```[^\n`]*\n(.*?)```", re.DOTALL)


class FenceSplitter:
    def __init__(self, marker: str = FENCE):
        self._marker = marker
        self._held = ""
        self._fenced = False
        self._chunks: list[str] = []

    @property
    def fenced(self) -> bool:
        return self._fenced

    @property
    def full_text(self) -> str:
        return "".join(self._chunks)

    def feed(self, chunk: str) -> str:
        """Accept one chunk; return the narrative text that is safe to emit now."""
        self._chunks.append(chunk)
        if self._fenced:
            return ""

        text = self._held + chunk
        idx = text.find(self._marker)
        if idx >= 0:
            self._fenced = True
            self._held = ""
            return text[:idx]

        hold = 0
        for k in range(min(len(self._marker) - 1, len(text)), 0, -1):
            if text.endswith(self._marker[:k]):
                hold = k
                break
        self._held = text[len(text) - hold :] if hold else ""
        return text[: len(text) - hold]

    def finish(self) -> str:
        """Flush held-back text once the stream ends without a fence."""
        if self._fenced:
            return ""
        held, self._held = self._held, ""
        return held


def narrative_of(text: str, marker: str = FENCE) -> str:
    return text.split(marker, 1)[0]


def extract_fenced_code(text: str) -> str:
    """Body of the first complete fenced block, stripped. Empty if there is none."""
    match = _FENCED_BLOCK.search(text or "")
    return match.group(1).strip() if match else ""
