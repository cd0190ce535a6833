import re
import json
import codecs
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

logger = logging.getLogger("docs_chat.relay")

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

SOURCE_STRATEGIES = ("auto", "metadata", "text")

# "Sources:" label on the last non-blank line of the answer
SOURCES_LINE_RE = re.compile(r"(?:^|\n)[^\n]*?\bSources:\s*([^\n]+?)\s*\Z", re.IGNORECASE)
SOURCES_SPLIT_RE = re.compile(r"[;,]")
SOURCE_ITEM_STRIP = " \t*`"

# file id -> filename; may raise
FileNameResolver = Callable[[str], Awaitable[Optional[str]]]


# -----------------------------
# Frames
# -----------------------------
@dataclass
class TextDelta:
    text: str


@dataclass
class FullText:
    text: str


@dataclass
class FileRef:
    file_id: str
    name: str = ""
    confident: bool = False


@dataclass
class ToolResult:
    files: List[FileRef] = field(default_factory=list)


@dataclass
class Completed:
    pass


@dataclass
class Failed:
    message: str


@dataclass
class Unknown:
    pass


def _str_or_empty(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _file_ref(entry: Any) -> Optional[FileRef]:
    if not isinstance(entry, dict):
        return None

    nested = entry.get("file") if isinstance(entry.get("file"), dict) else {}
    file_id = _str_or_empty(nested.get("id")) or _str_or_empty(entry.get("file_id"))
    filename = _str_or_empty(nested.get("filename")) or _str_or_empty(entry.get("filename"))
    if filename:
        return FileRef(file_id=file_id or filename, name=filename, confident=True)

    attributes = entry.get("attributes") if isinstance(entry.get("attributes"), dict) else {}
    hint = (
        _str_or_empty(nested.get("name"))
        or _str_or_empty(entry.get("name"))
        or _str_or_empty(entry.get("title"))
        or _str_or_empty(attributes.get("title"))
    )
    if not file_id:
        # nothing to key the entry on
        return None
    return FileRef(file_id=file_id, name=hint, confident=False)


def _results_of(payload: Dict[str, Any]) -> Optional[List[Any]]:
    if isinstance(payload.get("results"), list):
        return payload["results"]
    item = payload.get("item")
    if isinstance(item, dict) and isinstance(item.get("results"), list):
        return item["results"]
    annotation = payload.get("annotation")
    if isinstance(annotation, dict) and annotation.get("type") == "file_citation":
        return [annotation]
    return None


def classify_frame(payload: Any):
    """Map one decoded event payload onto a known frame shape.

    Anything that doesn't fit is returned as Unknown so the caller can drop it.
    """
    if not isinstance(payload, dict):
        return Unknown()

    kind = payload.get("type")
    if kind in ("error", "response.failed"):
        return Failed(message=_failure_message(payload))
    if kind == "response.completed":
        return Completed()

    if isinstance(payload.get("delta"), str):
        return TextDelta(text=payload["delta"])
    if isinstance(payload.get("output_text"), str):
        return FullText(text=payload["output_text"])

    results = _results_of(payload)
    if results is not None:
        refs = [ref for ref in (_file_ref(r) for r in results) if ref is not None]
        return ToolResult(files=refs)

    return Unknown()


def _failure_message(payload: Dict[str, Any]) -> str:
    error = payload.get("error")
    if not isinstance(error, dict):
        response = payload.get("response")
        if isinstance(response, dict):
            error = response.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if payload.get("message"):
        return str(payload["message"])
    return "upstream reported a failure"


def parse_record(line: str):
    """Decode a single SSE record. Returns None for non-data records and malformed payloads."""
    line = line.lstrip()
    if not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX):].strip()
    if not data:
        return None
    if data == DONE_SENTINEL:
        return Completed()
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Dropping malformed frame: %.200s", data)
        return None
    return classify_frame(payload)


# -----------------------------
# Line buffering
# -----------------------------
class LineBuffer:
    """Incremental bytes -> complete lines, carrying partial lines across chunks."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._pending += self._decoder.decode(chunk)
        lines = self._pending.split("\n")
        self._pending = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        self._pending += self._decoder.decode(b"", final=True)
        rest, self._pending = self._pending, ""
        rest = rest.rstrip("\r")
        return [rest] if rest.strip() else []


# -----------------------------
# Sources
# -----------------------------
@dataclass
class SourceEntry:
    name: str = ""
    confident: bool = False


class SourceRecord:
    """file id -> display name, in first-seen order."""

    def __init__(self):
        self.entries: Dict[str, SourceEntry] = {}

    def __len__(self) -> int:
        return len(self.entries)

    def add(self, ref: FileRef) -> None:
        entry = self.entries.get(ref.file_id)
        if entry is None:
            self.entries[ref.file_id] = SourceEntry(name=ref.name, confident=ref.confident)
            return
        if ref.confident and not entry.confident:
            entry.name, entry.confident = ref.name, True
        elif not entry.name and ref.name:
            entry.name = ref.name

    def unresolved(self) -> List[str]:
        return [file_id for file_id, entry in self.entries.items() if not entry.confident]

    def names(self) -> List[str]:
        # one name per distinct id
        return [entry.name or file_id for file_id, entry in self.entries.items()]


def extract_sources_from_text(answer: str) -> List[str]:
    m = SOURCES_LINE_RE.search(answer or "")
    if not m:
        return []
    out: List[str] = []
    for part in SOURCES_SPLIT_RE.split(m.group(1)):
        part = part.strip(SOURCE_ITEM_STRIP)
        if part and part not in out:
            out.append(part)
    return out


def extract_sources(answer: str, record: Optional[SourceRecord] = None, strategy: str = "auto") -> List[str]:
    if strategy == "text":
        return extract_sources_from_text(answer)
    names = record.names() if record is not None else []
    if strategy == "metadata" or names:
        return names
    return extract_sources_from_text(answer)


_VERSION_TOKEN_RE = re.compile(r"^(v\d+(\.\d+)*|\(\d+\)|final|copy)$", re.IGNORECASE)


def display_name(filename: str) -> str:
    raw = (filename or "").strip()
    base = raw.replace("\\", "/").rsplit("/", 1)[-1]
    if "." in base.lstrip("."):
        base = base.rsplit(".", 1)[0]
    base = re.sub(r"[_\-]+", " ", base)
    base = re.sub(r"\((\d+)\)", r" (\1) ", base)
    tokens = [t for t in base.split() if not _VERSION_TOKEN_RE.match(t)]
    pretty = " ".join(tokens)
    return pretty or raw


async def _lookup_name(resolver: FileNameResolver, file_id: str, fallback: str) -> str:
    try:
        name = await resolver(file_id)
    except Exception as exc:
        logger.warning("File lookup failed for %s: %s. Using %r.", file_id, exc, fallback)
        return fallback
    name = _str_or_empty(name)
    return name or fallback


async def enrich_sources(record: SourceRecord, resolver: Optional[FileNameResolver]) -> None:
    """Resolve names for entries without a confident one. Failures fall back to hint, then id."""
    pending = record.unresolved()
    if not pending or resolver is None:
        return
    fallbacks = [record.entries[file_id].name or file_id for file_id in pending]
    names = await asyncio.gather(
        *(_lookup_name(resolver, file_id, fb) for file_id, fb in zip(pending, fallbacks))
    )
    for file_id, name in zip(pending, names):
        record.entries[file_id] = SourceEntry(name=name, confident=True)


# -----------------------------
# Relay
# -----------------------------
def sse(obj: Any) -> bytes:
    return f"data: {json.dumps(obj, ensure_ascii=False)}\n\n".encode("utf-8")


SSE_DONE = f"data: {DONE_SENTINEL}\n\n".encode("utf-8")


class StreamRelay:
    """Turns one upstream Responses event stream into simplified frames for the browser.

    State is per request: create one relay per upstream stream.
    """

    def __init__(
        self,
        resolver: Optional[FileNameResolver] = None,
        strategy: str = "auto",
        pretty_names: bool = False,
    ):
        if strategy not in SOURCE_STRATEGIES:
            raise ValueError(f"Unknown source strategy: {strategy}")
        self.resolver = resolver
        self.strategy = strategy
        self.pretty_names = pretty_names
        self.lines = LineBuffer()
        self.parts: List[str] = []
        self.record = SourceRecord()
        self.completed = False
        self.failure: Optional[str] = None

    @property
    def answer(self) -> str:
        return "".join(self.parts)

    def handle_line(self, line: str) -> List[bytes]:
        frame = parse_record(line)
        if frame is None or isinstance(frame, Unknown):
            return []
        if isinstance(frame, (TextDelta, FullText)):
            if not frame.text:
                return []
            self.parts.append(frame.text)
            return [sse({"output_text": frame.text})]
        if isinstance(frame, ToolResult):
            for ref in frame.files:
                self.record.add(ref)
        elif isinstance(frame, Completed):
            self.completed = True
        elif isinstance(frame, Failed):
            self.failure = frame.message
        return []

    async def sources(self) -> List[str]:
        if self.strategy != "text":
            await enrich_sources(self.record, self.resolver)
        names = extract_sources(self.answer, self.record, self.strategy)
        if self.pretty_names:
            names = [display_name(n) for n in names]
        return names

    async def relay(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        error: Optional[str] = None
        try:
            async for chunk in chunks:
                if not chunk:
                    continue
                for line in self.lines.feed(chunk):
                    for out in self.handle_line(line):
                        yield out
                    if self.failure:
                        break
                if self.failure:
                    break
            else:
                for line in self.lines.flush():
                    for out in self.handle_line(line):
                        yield out
        except httpx.TransportError as exc:
            error = f"upstream stream interrupted: {exc.__class__.__name__}"

        if error is None and self.failure:
            error = self.failure
        if error is None and not self.completed:
            error = "upstream stream ended before completion"

        sources = await self.sources()
        if error is not None:
            logger.warning("Relay interrupted after %d chars: %s", len(self.answer), error)
            yield sse(
                {
                    "done": False,
                    "interrupted": True,
                    "error": error,
                    "final": self.answer,
                    "sources": sources,
                }
            )
            return

        yield sse({"done": True, "final": self.answer, "sources": sources})
        yield SSE_DONE
