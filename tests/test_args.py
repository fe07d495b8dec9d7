"""Tests for tool-argument parsing and implicit tool-call extraction."""

import pytest

from tether.protocol.args import (
    ImplicitToolCallExtractor,
    NullToolCallExtractor,
    extract_json_segments,
    make_extractor,
    parse_args,
)


class TestParseArgs:
    """parse_args never raises and always returns a dict."""

    def test_mapping_passes_through(self):
        assert parse_args({"x": 1}) == {"x": 1}

    def test_valid_json_string(self):
        assert parse_args('{"selector": "#go", "x": 1}') == {"selector": "#go", "x": 1}

    def test_trailing_junk_uses_first_balanced_object(self):
        assert parse_args('{"a":1} trailing junk') == {"a": 1}

    def test_not_json_is_empty(self):
        assert parse_args("not json") == {}

    @pytest.mark.parametrize("raw", [None, "", "   ", 42, 3.5, True])
    def test_degenerate_inputs(self, raw):
        assert parse_args(raw) == {}

    def test_list_is_wrapped(self):
        assert parse_args([1, 2]) == {"value": [1, 2]}
        assert parse_args("[1, 2]") == {"value": [1, 2]}

    def test_json_scalar_is_empty(self):
        assert parse_args("42") == {}

    def test_control_tokens_and_tags_are_stripped(self):
        raw = '<|begin_of_args|><args>{"url": "https://example.com"}</args><|end|>'
        assert parse_args(raw) == {"url": "https://example.com"}

    def test_braces_inside_strings_do_not_confuse_segments(self):
        raw = 'call with {"text": "a } b", "n": 2} please'
        assert parse_args(raw) == {"text": "a } b", "n": 2}


class TestExtractJsonSegments:
    def test_multiple_segments_in_order(self):
        assert extract_json_segments('x {"a": 1} y [2] z') == ['{"a": 1}', "[2]"]

    def test_mismatched_closer_resets(self):
        assert extract_json_segments('{"a": ]} {"b": 2}') == ['{"b": 2}']

    def test_unbalanced_yields_nothing(self):
        assert extract_json_segments('{"a": 1') == []


# ---------------------------------------------------------------------------
# Implicit tool calls
# ---------------------------------------------------------------------------


class TestImplicitExtraction:
    """Recovering tool calls a model described in text."""

    def test_requires_indicator(self):
        extractor = ImplicitToolCallExtractor()
        assert extractor.extract('{"name": "click", "arguments": {"x": 1}}') == []

    def test_code_block(self):
        text = 'Making a tool call:\n```json\n{"name": "click", "arguments": {"x": 1}}\n```'
        calls = ImplicitToolCallExtractor().extract(text)
        assert len(calls) == 1
        assert calls[0].name == "click"
        assert calls[0].args == {"x": 1}
        assert calls[0].id.startswith("implicit_")

    def test_tool_call_tag(self):
        text = '<tool_call>{"tool_name": "navigate", "args": "{\\"url\\": \\"https://a.io\\"}"}</tool_call>'
        calls = ImplicitToolCallExtractor().extract(text)
        assert [(c.name, c.args) for c in calls] == [("navigate", {"url": "https://a.io"})]

    def test_nested_function_shape_yields_one_call(self):
        text = 'tool_call: {"function": {"name": "scroll", "arguments": {"dy": 300}}}'
        calls = ImplicitToolCallExtractor().extract(text)
        assert [(c.name, c.args) for c in calls] == [("scroll", {"dy": 300})]

    def test_candidate_list(self):
        text = 'tool calls: {"tool_calls": [{"name": "a"}, {"name": "b", "input": {"k": "v"}}]}'
        calls = ImplicitToolCallExtractor().extract(text)
        assert [c.name for c in calls] == ["a", "b"]
        assert calls[1].args == {"k": "v"}

    def test_garbage_is_empty(self):
        assert ImplicitToolCallExtractor().extract("tool call: {{{ nope") == []

    def test_make_extractor(self):
        assert isinstance(make_extractor(True), ImplicitToolCallExtractor)
        assert isinstance(make_extractor(False), NullToolCallExtractor)
        assert make_extractor(False).extract('tool_call {"name": "x"}') == []
