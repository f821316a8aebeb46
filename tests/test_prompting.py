"""Tests for prompt assembly and turn helpers."""

from prompting import (
    SYSTEM_PROMPT,
    assistant_turn,
    build_messages,
    chunk_text,
    format_history,
    image_content,
    make_turn_pair,
    text_content,
    turn_text,
    user_turn,
)


class TestBuildMessages:
    def test_empty_history(self):
        turn = user_turn(text_content("Hello"))
        msgs = build_messages([], turn)
        assert msgs == [{"role": "system", "content": SYSTEM_PROMPT}, turn]

    def test_history_kept_in_order_new_turn_last(self):
        history = [user_turn(text_content("q")), assistant_turn("a")]
        turn = user_turn(text_content("next"))
        msgs = build_messages(history, turn)
        assert msgs[1:] == [*history, turn]
        assert [m["role"] for m in msgs].count("system") == 1

    def test_custom_system_prompt(self):
        msgs = build_messages([], user_turn(text_content("x")), system_prompt="be brief")
        assert msgs[0]["content"] == "be brief"

    def test_does_not_mutate_history(self):
        history = [user_turn(text_content("q")), assistant_turn("a")]
        build_messages(history, user_turn(text_content("x")))
        assert len(history) == 2


class TestTurnPair:
    def test_ids_unique_and_ordered_by_time(self):
        a = make_turn_pair(user_turn(text_content("1")), assistant_turn("1"))
        b = make_turn_pair(user_turn(text_content("2")), assistant_turn("2"))
        assert a["id"] != b["id"]
        assert a["id"][:20] <= b["id"][:20]
        assert [t["role"] for t in a["turns"]] == ["user", "assistant"]


class TestDisplay:
    def test_turn_text(self):
        assert turn_text(assistant_turn("hi")) == "hi"
        assert turn_text(user_turn(text_content("hello"))) == "hello"
        assert turn_text(user_turn(image_content("https://x/1.jpg"))) == "[image] https://x/1.jpg"
        assert turn_text(user_turn(image_content("data:image/jpeg;base64,AAAA"))) == "[image]"

    def test_format_history(self):
        out = format_history([user_turn(text_content("q\nline")), assistant_turn("a")])
        assert out.splitlines() == ["01. [user] q line", "02. [assistant] a"]

    def test_format_history_empty(self):
        assert "no messages" in format_history([])

    def test_chunk_text(self):
        assert chunk_text("abcde", 2) == ["ab", "cd", "e"]
        assert chunk_text("", 2) == []
