"""Tests for incremental prose/code splitting of streamed reasoning."""

from __future__ import annotations

import pytest
from fixloop.fences import FenceSplitter, extract_fenced_code, narrative_of

RESPONSE = (
    "The loop uses `=` instead of `===`, so n is reset to 0.\n"
    "Compare instead of assigning.\n"
    "```javascript\n"
    "function f(n){ if (n === 0) return 1; return n*f(n-1); }\n"
    "console.log(f(5));\n"
    "```\n"
)


def _feed_all(chunks: list[str]) -> tuple[str, FenceSplitter]:
    splitter = FenceSplitter()
    emitted = "".join(splitter.feed(chunk) for chunk in chunks)
    emitted += splitter.finish()
    return emitted, splitter


def _split_every(text: str, size: int) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)]


class TestFenceSplitter:
    @pytest.mark.parametrize("size", [1, 2, 3, 5, 7, 64, 1000])
    def test_emitted_text_equals_narrative(self, size):
        emitted, splitter = _feed_all(_split_every(RESPONSE, size))
        assert emitted == narrative_of(RESPONSE)
        assert splitter.fenced
        assert splitter.full_text == RESPONSE

    def test_marker_split_across_chunks(self):
        splitter = FenceSplitter()
        assert splitter.feed("Done. `") == "Done. "
        assert splitter.feed("`") == ""
        assert splitter.feed("`js\ncode\n```") == ""
        assert splitter.fenced

    def test_false_alarm_backticks_are_released(self):
        splitter = FenceSplitter()
        assert splitter.feed("use `x") == "use `x"
        assert splitter.feed("ok ``") == "ok "
        assert splitter.feed(" then") == "`` then"
        assert not splitter.fenced

    def test_nothing_emitted_after_fence(self):
        splitter = FenceSplitter()
        splitter.feed("prose ```js\n")
        assert splitter.feed("more prose") == ""
        assert splitter.finish() == ""

    def test_no_fence_flushes_held_text(self):
        emitted, splitter = _feed_all(["all prose, ends with `", "`"])
        assert emitted == "all prose, ends with ``"
        assert not splitter.fenced


class TestExtractFencedCode:
    def test_extracts_first_block(self):
        code = extract_fenced_code(RESPONSE)
        assert code.startswith("function f(n)")
        assert "n === 0" in code
        assert "```" not in code

    def test_block_without_language(self):
        assert extract_fenced_code("x\n```\nlet a = 1;\n```") == "let a = 1;"

    def test_unterminated_block_yields_nothing(self):
        assert extract_fenced_code("prose\n```js\nlet a = 1;") == ""

    def test_no_block(self):
        assert extract_fenced_code("just prose") == ""
        assert extract_fenced_code("") == ""


def test_narrative_without_fence_is_everything():
    assert narrative_of("only words") == "only words"
