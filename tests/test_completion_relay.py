import json
import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from completion_relay import (
    COMPLETED,
    ERRORED,
    MODIFY_LABELS,
    STREAM_ENDED_STATUS,
    CompletionRelay,
    token_event,
    status_event,
)


def _frame(event: dict) -> bytes:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n".encode("utf-8")


def _delta(text: str) -> bytes:
    return _frame({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}})


def _tokens(events) -> list:
    return [e.payload["text"] for e in events if e.kind == "token"]


class TestCompletionRelay(unittest.TestCase):
    def test_prefill_prepended_to_first_token_only(self) -> None:
        relay = CompletionRelay()
        events = []
        for chunk in (
            _frame({"type": "message_start"}),
            _delta("Hello"),
            _delta(","),
            _delta(" world"),
            _frame({"type": "message_stop"}),
        ):
            events.extend(relay.feed(chunk))
        self.assertEqual(_tokens(events), ["functionHello", ",", " world"])
        self.assertEqual(events[0].kind, "status")
        self.assertEqual(events[0].text, "Starting message generation...")
        self.assertEqual(events[-1].kind, "done")
        self.assertEqual(events[-1].text, "Generation complete!")
        self.assertEqual(relay.state, COMPLETED)

    def test_line_split_across_chunks(self) -> None:
        relay = CompletionRelay()
        self.assertEqual(relay.feed(b'data: {"typ'), [])
        events = relay.feed(b'e":"message_stop"}\n')
        self.assertEqual([e.kind for e in events], ["done"])
        self.assertTrue(relay.terminal)

    def test_multibyte_character_split_across_chunks(self) -> None:
        relay = CompletionRelay(prefill="")
        raw = _delta("é")
        cut = raw.index("é".encode("utf-8")) + 1
        events = relay.feed(raw[:cut]) + relay.feed(raw[cut:])
        self.assertEqual(_tokens(events), ["é"])

    def test_done_sentinel(self) -> None:
        relay = CompletionRelay(labels=MODIFY_LABELS)
        events = relay.feed(b"data: [DONE]\n")
        self.assertEqual(events[0].text, "Code modification complete!")
        self.assertEqual(relay.feed(_delta("late")), [])

    def test_usage_emitted_before_completion(self) -> None:
        relay = CompletionRelay()
        relay.feed(_frame({"type": "message_start", "message": {"usage": {"input_tokens": 12, "output_tokens": 1}}}))
        relay.feed(_frame({"type": "message_delta", "usage": {"output_tokens": 40}}))
        events = relay.feed(_frame({"type": "message_stop"}))
        self.assertEqual([e.kind for e in events], ["usage", "done"])
        self.assertEqual(events[0].payload, {"type": "usage", "input_tokens": 12, "output_tokens": 40})

    def test_unparseable_and_foreign_lines_are_skipped(self) -> None:
        relay = CompletionRelay()
        events = relay.feed(b"event: content_block_delta\ndata: {not json}\n: comment\ndata: 42\n" + _delta("ok"))
        self.assertEqual(_tokens(events), ["functionok"])
        self.assertFalse(relay.terminal)

    def test_stream_end_without_terminal_event(self) -> None:
        relay = CompletionRelay()
        relay.feed(_delta("x"))
        events = relay.finish()
        self.assertEqual([(e.kind, e.text) for e in events], [("status", STREAM_ENDED_STATUS)])
        self.assertEqual(relay.finish(), [])

    def test_finish_flushes_unterminated_line(self) -> None:
        relay = CompletionRelay()
        events = relay.feed(b'data: {"type":"message_stop"}')
        self.assertEqual(events, [])
        self.assertEqual([e.kind for e in relay.finish()], ["done"])

    def test_fail_is_terminal(self) -> None:
        relay = CompletionRelay()
        events = relay.fail("Error: API error - 500")
        self.assertEqual([(e.kind, e.text) for e in events], [("error", "Error: API error - 500")])
        self.assertEqual(relay.state, ERRORED)
        self.assertEqual(relay.feed(_delta("x")), [])
        self.assertEqual(relay.fail("again"), [])


class TestRelayFrames(unittest.TestCase):
    def test_token_frame_is_named_json_event(self) -> None:
        frame = token_event("a\nb").to_frame()
        self.assertTrue(frame.startswith("event: token\ndata: "))
        self.assertTrue(frame.endswith("\n\n"))
        payload = json.loads(frame.split("data: ", 1)[1])
        self.assertEqual(payload, {"type": "token", "text": "a\nb"})

    def test_status_frame_is_plain_data(self) -> None:
        self.assertEqual(status_event("Stream ended").to_frame(), "data: Stream ended\n\n")
        self.assertEqual(status_event("a\nb").to_frame(), "data: a\ndata: b\n\n")


if __name__ == "__main__":
    unittest.main()
