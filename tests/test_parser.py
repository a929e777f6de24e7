"""Tests for the incremental streaming parser.

The parser must produce the same finalized blocks however the model's
output happens to be split into fragments, and must never rewrite a
block once it has been finalized.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from taskloop.models import TextContent, ToolUse
from taskloop.parser import AssistantMessageParser

TOOLS = ["read_file", "write_to_file", "execute_command", "attempt_completion"]
PARAMS = ["path", "content", "command", "result"]

READ_OUTPUT = """Let me check.
<read_file>
<path>a.txt</path>
</read_file>"""

MIXED_OUTPUT = """I'll look at the config, then update the page.

<read_file>
<path>config.json</path>
</read_file>

Now the page:
<write_to_file>
<path>index.html</path>
<content>
<html>
  <body><p>hi</p></body>
</html>
</content>
</write_to_file>
Done for now."""


def make_parser() -> AssistantMessageParser:
    return AssistantMessageParser(TOOLS, PARAMS)


def parse_in_fragments(text: str, fragments):
    parser = make_parser()
    for fragment in fragments:
        parser.process_fragment(fragment)
    return parser.finish()


def split_every(text: str, n: int):
    return [text[i:i + n] for i in range(0, len(text), n)]


class TestCompleteOutput:

    def test_text_then_tool(self):
        blocks = parse_in_fragments(READ_OUTPUT, [READ_OUTPUT])
        assert blocks == [
            TextContent("Let me check."),
            ToolUse("read_file", {"path": "a.txt"}),
        ]

    def test_mixed_output_block_order(self):
        blocks = parse_in_fragments(MIXED_OUTPUT, [MIXED_OUTPUT])
        assert [b.type for b in blocks] == ["text", "tool_use", "text", "tool_use", "text"]
        assert blocks[1] == ToolUse("read_file", {"path": "config.json"})
        assert blocks[2] == TextContent("Now the page:")
        assert blocks[3].name == "write_to_file"
        assert blocks[3].params["path"] == "index.html"
        assert blocks[3].params["content"] == "<html>\n  <body><p>hi</p></body>\n</html>"
        assert blocks[4] == TextContent("Done for now.")
        assert not any(b.partial for b in blocks)

    def test_text_only(self):
        blocks = parse_in_fragments("Just thinking out loud.", ["Just thinking", " out loud."])
        assert blocks == [TextContent("Just thinking out loud.")]

    def test_empty_output(self):
        assert parse_in_fragments("", []) == []

    def test_closing_tag_inside_content_is_kept(self):
        output = (
            "<write_to_file>\n<path>doc.md</path>\n<content>\n"
            "Example markup: </write_to_file>\n</content>\n</write_to_file>"
        )
        blocks = parse_in_fragments(output, [output])
        assert len(blocks) == 1
        assert blocks[0].params["content"] == "Example markup: </write_to_file>"

    def test_unknown_tags_are_text(self):
        output = "Use <b>bold</b> here."
        assert parse_in_fragments(output, [output]) == [TextContent("Use <b>bold</b> here.")]


class TestFragmentationInvariance:

    @pytest.mark.parametrize("output", [READ_OUTPUT, MIXED_OUTPUT])
    @pytest.mark.parametrize("size", [1, 2, 3, 7, 16])
    def test_fixed_size_fragments(self, output, size):
        expected = parse_in_fragments(output, [output])
        assert parse_in_fragments(output, split_every(output, size)) == expected

    def test_every_two_way_split(self):
        expected = parse_in_fragments(MIXED_OUTPUT, [MIXED_OUTPUT])
        for i in range(len(MIXED_OUTPUT) + 1):
            fragments = [MIXED_OUTPUT[:i], MIXED_OUTPUT[i:]]
            assert parse_in_fragments(MIXED_OUTPUT, fragments) == expected, f"split at {i}"

    def test_finalized_prefix_only_grows(self):
        parser = make_parser()
        seen = []
        for fragment in split_every(MIXED_OUTPUT, 5):
            blocks = parser.process_fragment(fragment)
            finalized = [b for b in blocks if not b.partial]
            assert finalized[:len(seen)] == seen
            # Only the last block may be partial.
            assert all(not b.partial for b in blocks[:-1])
            seen = finalized
        assert parser.finish()[:len(seen)] == seen


class TestPartialBlocks:

    def test_split_opening_tag_is_held_back(self):
        parser = make_parser()
        blocks = parser.process_fragment("Let me check.\n<read_fi")
        assert blocks == [TextContent("Let me check.", partial=True)]

        blocks = parser.process_fragment("le>\n<path>a.t")
        assert blocks[0] == TextContent("Let me check.")
        assert blocks[1] == ToolUse("read_file", {"path": "a.t"}, partial=True)

    def test_split_closing_param_tag_is_held_back(self):
        parser = make_parser()
        blocks = parser.process_fragment("<execute_command>\n<command>ls -la</comm")
        assert blocks == [ToolUse("execute_command", {"command": "ls -la"}, partial=True)]

    def test_partial_text_grows(self):
        parser = make_parser()
        assert parser.process_fragment("Hel") == [TextContent("Hel", partial=True)]
        assert parser.process_fragment("lo") == [TextContent("Hello", partial=True)]
        assert parser.finalized_count == 0

    def test_finish_finalizes_unclosed_tool(self):
        parser = make_parser()
        parser.process_fragment("<execute_command>\n<command>ls")
        assert parser.finish() == [ToolUse("execute_command", {"command": "ls"})]

    def test_text_that_looks_like_tag_prefix_is_flushed_on_finish(self):
        parser = make_parser()
        parser.process_fragment("compare a <read")
        assert parser.finish() == [TextContent("compare a <read")]

    def test_raw_text_is_verbatim(self):
        parser = make_parser()
        for fragment in split_every(MIXED_OUTPUT, 4):
            parser.process_fragment(fragment)
        assert parser.text == MIXED_OUTPUT


class TestLifecycle:

    def test_fragment_after_finish_raises(self):
        parser = make_parser()
        parser.finish()
        with pytest.raises(RuntimeError):
            parser.process_fragment("more")

    def test_finish_is_idempotent(self):
        parser = make_parser()
        parser.process_fragment(READ_OUTPUT)
        assert parser.finish() == parser.finish()

    def test_reset_starts_a_new_turn(self):
        parser = make_parser()
        parser.process_fragment(READ_OUTPUT)
        parser.finish()
        parser.reset()
        assert parser.blocks == []
        assert parser.process_fragment("next") == [TextContent("next", partial=True)]
