"""Tests for push-stream line framing and parsing."""

from realtime_transport.stream_parser import EventStreamParser, LineBuffer, decode_payload


class TestLineBuffer:
    def test_keeps_trailing_fragment(self):
        buf = LineBuffer()
        assert buf.feed(b"data: {\"a\"") == []
        assert buf.pending == 'data: {"a"'
        assert buf.feed(b": 1}\n") == ['data: {"a": 1}']
        assert buf.pending == ""

    def test_multiple_lines_in_one_chunk(self):
        buf = LineBuffer()
        assert buf.feed(b"id: 1\ndata: x\n\n") == ["id: 1", "data: x", ""]

    def test_strips_carriage_return(self):
        buf = LineBuffer()
        assert buf.feed(b"data: x\r\n") == ["data: x"]

    def test_utf8_split_across_chunks(self):
        buf = LineBuffer()
        encoded = "data: café\n".encode()
        assert buf.feed(encoded[:10]) == []
        assert buf.feed(encoded[10:]) == ["data: café"]

    def test_accepts_text(self):
        assert LineBuffer().feed("a\nb") == ["a"]


class TestEventStreamParser:
    def test_data_line(self):
        field = EventStreamParser().parse_line('data: {"type":"chat"}')
        assert field.name == "data"
        assert field.value == '{"type":"chat"}'
        assert field.event_type is None

    def test_event_applies_to_next_data_only(self):
        parser = EventStreamParser()
        assert parser.parse_line("event: notice") is None
        assert parser.parse_line("data: 1").event_type == "notice"
        assert parser.parse_line("data: 2").event_type is None

    def test_id_line(self):
        field = EventStreamParser().parse_line("id: m42")
        assert (field.name, field.value) == ("id", "m42")

    def test_retry_line(self):
        field = EventStreamParser().parse_line("retry: 2500")
        assert (field.name, field.value) == ("retry", 2500)

    def test_bad_retry_ignored(self):
        assert EventStreamParser().parse_line("retry: soon") is None

    def test_comments_and_blank_ignored(self):
        parser = EventStreamParser()
        assert parser.parse_line(": keepalive") is None
        assert parser.parse_line("") is None

    def test_reset_clears_pending_event(self):
        parser = EventStreamParser()
        parser.parse_line("event: notice")
        parser.reset()
        assert parser.parse_line("data: x").event_type is None


class TestDecodePayload:
    def test_object_keeps_type(self):
        assert decode_payload('{"type":"chat","data":1}', "notice") == {"type": "chat", "data": 1}

    def test_object_without_type_gets_event_name(self):
        assert decode_payload('{"data":1}', "notice") == {"data": 1, "type": "notice"}

    def test_default_type_is_message(self):
        assert decode_payload('{"data":1}')["type"] == "message"

    def test_non_object_json(self):
        assert decode_payload("[1, 2]") == {"type": "message", "data": [1, 2]}

    def test_plain_text(self):
        assert decode_payload("hello", "greeting") == {"type": "greeting", "data": "hello"}
