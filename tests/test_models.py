"""Tests for the canonical message model and its normalization helpers."""

from tether.protocol.models import (
    ImagePart,
    Message,
    Role,
    TextPart,
    ToolCall,
    ToolResultPart,
    ToolUsePart,
    Usage,
    content_text,
    image_count,
    normalize_content,
    normalize_history,
    normalize_role,
)


class TestRoles:
    def test_case_insensitive(self):
        assert normalize_role("Assistant") is Role.ASSISTANT
        assert normalize_role(" TOOL ") is Role.TOOL

    def test_unknown(self):
        assert normalize_role("developer") is None
        assert normalize_role(None) is None


class TestMessage:
    """Constructors, views and equality."""

    def test_equality_ignores_id_and_timestamp(self):
        a = Message.user("hi")
        b = Message.user("hi")
        assert a.id != b.id
        assert a == b

    def test_text_skips_non_text_parts(self):
        msg = Message.user([TextPart("look"), ImagePart(url="https://x/img.png"), TextPart("here")])
        assert msg.text == "look\nhere"
        assert msg.has_images

    def test_parts_of_string_content(self):
        assert Message.user("").parts == []
        assert Message.user("a").parts == [TextPart("a")]

    def test_all_tool_calls_merges_tool_use_parts(self):
        msg = Message.assistant(
            [TextPart("working"), ToolUsePart(id="c2", name="scroll", input={"dy": 1})],
            tool_calls=[ToolCall(id="c1", name="click", args={"x": 1})],
        )
        assert [c.id for c in msg.all_tool_calls()] == ["c1", "c2"]

    def test_all_tool_calls_dedupes_by_id(self):
        msg = Message.assistant(
            [ToolUsePart(id="c1", name="click")],
            tool_calls=[ToolCall(id="c1", name="click")],
        )
        assert len(msg.all_tool_calls()) == 1

    def test_tool_results_of_tool_message(self):
        msg = Message.tool_result("c1", "boom", name="click", is_error=True)
        results = msg.tool_results()
        assert results == [ToolResultPart(tool_call_id="c1", content="boom", is_error=True)]

    def test_tool_results_of_user_message(self):
        msg = Message.user([ToolResultPart(tool_call_id="c1", content="ok"), TextPart("and more")])
        assert [r.tool_call_id for r in msg.tool_results()] == ["c1"]

    def test_summary_flag(self):
        assert Message.system("s", kind="summary").is_summary
        assert not Message.system("s").is_summary


class TestSerialization:
    def test_round_trip_preserves_everything(self):
        original = Message.assistant(
            [TextPart("t"), ToolUsePart(id="c1", name="click", input={"x": 1})],
            tool_calls=[ToolCall(id="c2", name="type", args={"text": "hi"})],
            thinking="hmm",
            usage=Usage(1, 2, 3),
        )
        restored = Message.from_dict(original.to_dict())
        assert restored == original
        assert restored.id == original.id
        assert restored.created_at == original.created_at

    def test_openai_shaped_assistant(self):
        msg = Message.from_dict(
            {
                "role": "assistant",
                "content": None,
                "reasoning_content": "plan",
                "tool_calls": [
                    {"id": "call_1", "type": "function", "function": {"name": "click", "arguments": '{"x": 5}'}}
                ],
            }
        )
        assert msg.content == ""
        assert msg.thinking == "plan"
        assert msg.tool_calls == [ToolCall(id="call_1", name="click", args={"x": 5})]

    def test_anthropic_shaped_user_with_results(self):
        msg = Message.from_dict(
            {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": "toolu_1", "content": "done", "is_error": False},
                    {"type": "image", "source": {"type": "base64", "media_type": "image/jpeg", "data": "AAA"}},
                ],
            }
        )
        assert msg.content[0] == ToolResultPart(tool_call_id="toolu_1", content="done")
        assert msg.content[1] == ImagePart(media_type="image/jpeg", data="AAA")

    def test_unknown_role_raises(self):
        try:
            Message.from_dict({"role": "robot", "content": "x"})
        except ValueError as e:
            assert "robot" in str(e)
        else:
            raise AssertionError("expected ValueError")

    def test_normalize_history_skips_bad_entries(self):
        history = normalize_history([{"role": "user", "content": "a"}, {"role": "??"}, "junk", Message.user("b")])
        assert [m.text for m in history] == ["a", "b"]


class TestContentHelpers:
    def test_normalize_content_never_none(self):
        assert normalize_content(None) == ""
        assert normalize_content({"type": "text", "text": "x"}) == [TextPart("x")]
        assert normalize_content({"weird": 1}) == '{"weird": 1}'

    def test_image_url_data_split(self):
        part = normalize_content([{"type": "image_url", "image_url": {"url": "data:image/webp;base64,QUJD"}}])[0]
        assert part == ImagePart(media_type="image/webp", data="QUJD")
        assert part.as_url == "data:image/webp;base64,QUJD"

    def test_image_count_includes_nested_results(self):
        content = [ToolResultPart(tool_call_id="c", content=[ImagePart(url="u"), TextPart("t")]), ImagePart(url="v")]
        assert image_count(content) == 2
        assert content_text(content) == ""

    def test_usage_shapes(self):
        assert Usage.normalize({"prompt_tokens": 3, "completion_tokens": 4}) == Usage(3, 4, 7)
        assert Usage.normalize({"inputTokens": 1, "outputTokens": 1, "totalTokens": 9}) == Usage(1, 1, 9)
        assert Usage.normalize("nope") is None
        assert Usage(1, 2, 3) + Usage(1, 1, 1) == Usage(2, 3, 4)
