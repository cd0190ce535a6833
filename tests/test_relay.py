import json
import unittest
from unittest.mock import AsyncMock

import httpx

from relay import (
    Completed,
    Failed,
    FileRef,
    FullText,
    LineBuffer,
    SourceRecord,
    StreamRelay,
    TextDelta,
    ToolResult,
    Unknown,
    classify_frame,
    display_name,
    enrich_sources,
    extract_sources,
    extract_sources_from_text,
    parse_record,
)


def sse_bytes(*payloads) -> bytes:
    out = []
    for p in payloads:
        data = p if isinstance(p, str) else json.dumps(p)
        out.append(f"event: message\ndata: {data}\n\n")
    return "".join(out).encode("utf-8")


async def chunked(*chunks):
    for c in chunks:
        yield c


def decode_frames(raw: bytes):
    frames = []
    for block in raw.decode("utf-8").split("\n\n"):
        if not block.startswith("data: "):
            continue
        data = block[len("data: "):]
        frames.append(data if data == "[DONE]" else json.loads(data))
    return frames


async def run_relay(relay, chunks):
    out = b""
    async for frame in relay.relay(chunks):
        out += frame
    return decode_frames(out)


class TestLineBuffer(unittest.TestCase):
    def test_record_split_at_any_offset(self):
        record = 'data: {"delta": "café ☃"}\n'.encode("utf-8")
        whole = LineBuffer().feed(record)
        self.assertEqual(len(whole), 1)
        for i in range(1, len(record)):
            buf = LineBuffer()
            lines = buf.feed(record[:i]) + buf.feed(record[i:])
            self.assertEqual(lines, whole, f"split at byte {i}")
            self.assertEqual(parse_record(lines[0]), TextDelta(text="café ☃"))

    def test_partial_line_held_until_newline(self):
        buf = LineBuffer()
        self.assertEqual(buf.feed(b'data: {"delta": "a'), [])
        self.assertEqual(buf.feed(b'b"}\r\ndata: x'), ['data: {"delta": "ab"}'])
        self.assertEqual(buf.flush(), ["data: x"])
        self.assertEqual(buf.flush(), [])


class TestParsing(unittest.TestCase):
    def test_parse_record(self):
        self.assertIsNone(parse_record("event: response.output_text.delta"))
        self.assertIsNone(parse_record(": keep-alive"))
        self.assertIsNone(parse_record("data: {not json"))
        self.assertIsNone(parse_record("data:   "))
        self.assertEqual(parse_record("  data: [DONE]"), Completed())
        self.assertEqual(parse_record('data: {"output_text": "hi"}'), FullText(text="hi"))

    def test_classify_text_frames(self):
        self.assertEqual(classify_frame({"type": "response.output_text.delta", "delta": "x"}), TextDelta(text="x"))
        self.assertEqual(classify_frame({"output_text": "full"}), FullText(text="full"))
        self.assertEqual(classify_frame({"type": "response.completed", "response": {}}), Completed())

    def test_classify_tool_results(self):
        frame = classify_frame(
            {
                "type": "file_search_call.results",
                "results": [
                    {"file": {"id": "file-1", "filename": "a.pdf"}},
                    {"file_id": "file-2", "filename": "b.pdf"},
                    {"file_id": "file-3", "attributes": {"title": "Handbook"}},
                    {"text": "no identifier"},
                ],
            }
        )
        self.assertIsInstance(frame, ToolResult)
        self.assertEqual(
            frame.files,
            [
                FileRef("file-1", "a.pdf", True),
                FileRef("file-2", "b.pdf", True),
                FileRef("file-3", "Handbook", False),
            ],
        )

    def test_classify_nested_item_and_annotation(self):
        item = classify_frame(
            {"type": "response.output_item.done", "item": {"type": "file_search_call", "results": [{"file_id": "f"}]}}
        )
        self.assertEqual(item, ToolResult(files=[FileRef("f", "", False)]))
        ann = classify_frame(
            {
                "type": "response.output_text.annotation.added",
                "annotation": {"type": "file_citation", "file_id": "f9", "filename": "z.md"},
            }
        )
        self.assertEqual(ann, ToolResult(files=[FileRef("f9", "z.md", True)]))

    def test_classify_failures_and_unknown(self):
        self.assertEqual(classify_frame({"type": "error", "message": "rate limited"}), Failed("rate limited"))
        failed = classify_frame({"type": "response.failed", "response": {"error": {"message": "boom"}}})
        self.assertEqual(failed, Failed("boom"))
        self.assertEqual(classify_frame([1, 2]), Unknown())
        self.assertEqual(classify_frame({"type": "response.created"}), Unknown())


class TestSources(unittest.TestCase):
    def test_distinct_ids_in_first_seen_order(self):
        record = SourceRecord()
        for file_id, name in [("b", "b.pdf"), ("a", "a.pdf"), ("b", "b.pdf"), ("c", "c.pdf"), ("a", "a.pdf")]:
            record.add(FileRef(file_id, name, True))
        self.assertEqual(len(record), 3)
        self.assertEqual(record.names(), ["b.pdf", "a.pdf", "c.pdf"])

    def test_confident_name_replaces_hint(self):
        record = SourceRecord()
        record.add(FileRef("f1", "Hint", False))
        record.add(FileRef("f1", "real.pdf", True))
        record.add(FileRef("f1", "other hint", False))
        self.assertEqual(record.names(), ["real.pdf"])
        self.assertEqual(record.unresolved(), [])

    def test_sources_line(self):
        self.assertEqual(extract_sources_from_text("Answer.\nSources: a.pdf, b.pdf"), ["a.pdf", "b.pdf"])
        self.assertEqual(extract_sources_from_text("...Sources: a.pdf; b.pdf;"), ["a.pdf", "b.pdf"])
        self.assertEqual(extract_sources_from_text("Answer.\nsources:  a.pdf ,a.pdf\n\n"), ["a.pdf"])
        self.assertEqual(extract_sources_from_text("Answer.\n**Sources:** `a.pdf`"), ["a.pdf"])
        self.assertEqual(extract_sources_from_text("No citations here."), [])
        self.assertEqual(extract_sources_from_text("Sources: a.pdf\nThen more text."), [])
        self.assertEqual(extract_sources_from_text(""), [])

    def test_extract_sources_strategies(self):
        record = SourceRecord()
        record.add(FileRef("f1", "meta.pdf", True))
        answer = "Text.\nSources: text.pdf"
        self.assertEqual(extract_sources(answer, record, "metadata"), ["meta.pdf"])
        self.assertEqual(extract_sources(answer, record, "text"), ["text.pdf"])
        self.assertEqual(extract_sources(answer, record, "auto"), ["meta.pdf"])
        self.assertEqual(extract_sources(answer, SourceRecord(), "auto"), ["text.pdf"])
        self.assertEqual(extract_sources(answer, SourceRecord(), "metadata"), [])

    def test_display_name(self):
        self.assertEqual(display_name("Employee_Handbook_v2_final.pdf"), "Employee Handbook")
        self.assertEqual(display_name("docs/policy - copy (1).docx"), "policy")
        self.assertEqual(display_name("notes.md"), "notes")
        self.assertEqual(display_name(".env"), ".env")
        self.assertEqual(display_name("v2.pdf"), "v2.pdf")


class TestEnrichment(unittest.IsolatedAsyncioTestCase):
    async def test_lookup_only_unresolved_and_fallbacks(self):
        record = SourceRecord()
        record.add(FileRef("file-1", "known.pdf", True))
        record.add(FileRef("file-2", "", False))
        record.add(FileRef("file-3", "Hint Title", False))
        record.add(FileRef("file-4", "", False))

        async def lookup(file_id):
            if file_id == "file-2":
                return "resolved.pdf"
            if file_id == "file-4":
                return ""
            raise httpx.ConnectError("down")

        resolver = AsyncMock(side_effect=lookup)
        await enrich_sources(record, resolver)

        self.assertEqual(sorted(c.args[0] for c in resolver.await_args_list), ["file-2", "file-3", "file-4"])
        self.assertEqual(record.names(), ["known.pdf", "resolved.pdf", "Hint Title", "file-4"])

    async def test_failed_lookup_is_deterministic(self):
        resolver = AsyncMock(side_effect=RuntimeError("404"))
        names = []
        for _ in range(2):
            record = SourceRecord()
            record.add(FileRef("file-x", "", False))
            await enrich_sources(record, resolver)
            names.append(record.names())
        self.assertEqual(names, [["file-x"], ["file-x"]])


class TestStreamRelay(unittest.IsolatedAsyncioTestCase):
    async def test_relays_text_and_final_summary(self):
        raw = sse_bytes(
            {"type": "response.created"},
            {"type": "response.output_text.delta", "delta": "Hello "},
            {"type": "response.output_item.done", "item": {"results": [{"file_id": "f1", "filename": "a.pdf"}]}},
            "{broken",
            {"type": "response.output_text.delta", "delta": "world"},
            {"type": "response.output_item.done", "item": {"results": [{"file_id": "f1", "filename": "a.pdf"}]}},
            {"type": "response.completed", "response": {"id": "resp_1"}},
        )
        # odd chunk sizes so records straddle chunk boundaries
        chunks = [raw[i:i + 7] for i in range(0, len(raw), 7)]
        frames = await run_relay(StreamRelay(), chunked(*chunks))

        self.assertEqual(frames[0], {"output_text": "Hello "})
        self.assertEqual(frames[1], {"output_text": "world"})
        self.assertEqual(frames[2], {"done": True, "final": "Hello world", "sources": ["a.pdf"]})
        self.assertEqual(frames[3], "[DONE]")
        self.assertEqual(len(frames), 4)

    async def test_done_sentinel_and_text_strategy(self):
        raw = sse_bytes(
            {"output_text": "Answer.\nSources: x.pdf; y.pdf"},
            {"results": [{"file_id": "f1"}]},
            "[DONE]",
        )
        resolver = AsyncMock(return_value="ignored.pdf")
        frames = await run_relay(StreamRelay(resolver=resolver, strategy="text"), chunked(raw))
        self.assertEqual(frames[-2]["sources"], ["x.pdf", "y.pdf"])
        self.assertEqual(frames[-1], "[DONE]")
        resolver.assert_not_awaited()

    async def test_metadata_sources_enriched_after_stream(self):
        raw = sse_bytes(
            {"delta": "Hi"},
            {"results": [{"file_id": "file-a"}, {"file_id": "file-b"}, {"file_id": "file-a"}]},
            {"type": "response.completed"},
        )
        resolver = AsyncMock(side_effect=lambda fid: f"{fid}_Guide_v3.pdf")
        frames = await run_relay(StreamRelay(resolver=resolver, pretty_names=True), chunked(raw))
        self.assertEqual(frames[-2]["sources"], ["file a Guide", "file b Guide"])
        self.assertEqual(resolver.await_count, 2)

    async def test_transport_error_emits_partial_answer(self):
        async def dropping():
            yield sse_bytes({"delta": "Partial "})
            yield b'data: {"delta": "ans'
            raise httpx.ReadError("connection reset")

        frames = await run_relay(StreamRelay(), dropping())
        self.assertEqual(frames[0], {"output_text": "Partial "})
        final = frames[-1]
        self.assertFalse(final["done"])
        self.assertTrue(final["interrupted"])
        self.assertEqual(final["final"], "Partial ")
        self.assertIn("ReadError", final["error"])
        self.assertNotIn("[DONE]", frames)

    async def test_stream_ending_without_completion_is_interrupted(self):
        raw = sse_bytes({"delta": "cut"})
        frames = await run_relay(StreamRelay(), chunked(raw))
        self.assertEqual(frames[-1]["final"], "cut")
        self.assertTrue(frames[-1]["interrupted"])
        self.assertNotIn("[DONE]", frames)

    async def test_upstream_failure_frame(self):
        raw = sse_bytes(
            {"delta": "a"},
            {"type": "error", "message": "Rate limit reached"},
            {"delta": "never relayed"},
        )
        frames = await run_relay(StreamRelay(), chunked(raw))
        self.assertEqual(frames[-1]["error"], "Rate limit reached")
        self.assertEqual(frames[-1]["final"], "a")

    async def test_trailing_record_without_newline(self):
        raw = sse_bytes({"delta": "x"}) + b"data: [DONE]"
        frames = await run_relay(StreamRelay(), chunked(raw))
        self.assertEqual(frames[-2], {"done": True, "final": "x", "sources": []})

    def test_rejects_unknown_strategy(self):
        with self.assertRaises(ValueError):
            StreamRelay(strategy="merge")


if __name__ == "__main__":
    unittest.main()
