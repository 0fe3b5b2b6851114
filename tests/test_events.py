from unittest.mock import MagicMock

from concrete_jobs.client.events import EventStream, ServerSentEvent, parse_events


def test_parse_named_events():
    lines = [
        "event: progress",
        'data: {"id": "a", "processedItems": 1}',
        "",
        "event: complete",
        'data: {"id": "a", "processedItems": 2}',
        "",
    ]
    events = list(parse_events(lines))

    assert [e.event for e in events] == ["progress", "complete"]
    assert events[1].json() == {"id": "a", "processedItems": 2}


def test_parse_multiline_data_comments_and_defaults():
    lines = [
        ": keep-alive",
        "id: 7",
        "retry: 3000",
        "data: first",
        "data:second",
        "",
    ]
    (event,) = parse_events(lines)

    assert event == ServerSentEvent("message", "first\nsecond", "7", 3000)


def test_blank_line_without_data_dispatches_nothing():
    assert list(parse_events(["event: progress", "", ""])) == []


def test_unterminated_event_is_dropped():
    assert list(parse_events(["event: progress", "data: {}"])) == []


def test_crlf_and_bytes_lines():
    (event,) = parse_events([b"event: failed\r\n", b'data: {"id": "x"}\r\n', b"\r\n"])
    assert event.event == "failed"
    assert event.json() == {"id": "x"}


def test_event_stream_reads_response_lines_and_closes_once():
    response = MagicMock()
    response.encoding = None
    response.iter_lines.return_value = iter(["event: progress", "data: {}", ""])

    with EventStream(response) as stream:
        events = list(stream)
        stream.close()

    assert [e.event for e in events] == ["progress"]
    assert response.encoding == "utf-8"
    response.iter_lines.assert_called_once_with(chunk_size=None, decode_unicode=True)
    response.close.assert_called_once()
