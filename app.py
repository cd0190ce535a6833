import os
import json
import asyncio
import pathlib
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Dict, Any, Optional, Tuple

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, Response, StreamingResponse
from pydantic import BaseModel, field_validator

from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from relay import SOURCE_STRATEGIES, StreamRelay, extract_sources

DOTENV_LOADED = load_dotenv()
logger = logging.getLogger("docs_chat")


# -----------------------------
# Configuration (env vars)
# -----------------------------
DEFAULT_MODEL = "gpt-4.1-mini"
DEFAULT_SYSTEM_PROMPT = (
    "Answer only using the provided documents. "
    "If the answer is not present, say: \"I don't know based on the provided documents.\" "
    "End your answer with a final line of the form 'Sources: <file name>, <file name>' "
    "listing the documents you used."
)
DEFAULT_MAX_MESSAGE_CHARS = 4000

SECRET_KEYS = {"OPENAI_API_KEY"}

CORS_ALLOW_METHODS = "POST, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, Authorization"


@dataclass(frozen=True)
class Settings:
    openai_api_key: Optional[str] = None
    vector_store_id: Optional[str] = None
    model: str = DEFAULT_MODEL
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    system_prompt_source: str = "default"
    system_prompt_path: Optional[str] = None
    allowed_origins: Tuple[str, ...] = ("*",)
    sources_strategy: str = "auto"
    pretty_source_names: bool = False
    max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS

    @classmethod
    def from_env(cls) -> "Settings":
        prompt, source, path = load_system_prompt(
            os.getenv("SYSTEM_PROMPT"), os.getenv("SYSTEM_PROMPT_PATH")
        )
        strategy = (os.getenv("SOURCES_STRATEGY") or "auto").strip().lower()
        if strategy not in SOURCE_STRATEGIES:
            logger.warning("Unknown SOURCES_STRATEGY %r; using 'auto'.", strategy)
            strategy = "auto"
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            vector_store_id=os.getenv("OPENAI_VECTOR_STORE_ID") or None,
            model=os.getenv("OPENAI_MODEL") or DEFAULT_MODEL,
            system_prompt=prompt,
            system_prompt_source=source,
            system_prompt_path=path,
            allowed_origins=_parse_origins(os.getenv("CORS_ALLOWED_ORIGINS", "*")),
            sources_strategy=strategy,
            pretty_source_names=_env_flag(os.getenv("PRETTY_SOURCE_NAMES")),
            max_message_chars=_env_int("MAX_MESSAGE_CHARS", DEFAULT_MAX_MESSAGE_CHARS),
        )

    def missing(self) -> List[str]:
        out = []
        if not self.openai_api_key:
            out.append("OPENAI_API_KEY")
        if not self.vector_store_id:
            out.append("OPENAI_VECTOR_STORE_ID")
        return out

    def origin_allowed(self, origin: Optional[str]) -> bool:
        # requests without an Origin header are not cross-site browser calls
        if not origin or "*" in self.allowed_origins:
            return True
        return origin in self.allowed_origins


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


# -----------------------------
# Helpers
# -----------------------------
def _parse_origins(value: Optional[str]) -> Tuple[str, ...]:
    origins = tuple(o.strip() for o in (value or "").split(",") if o.strip())
    return origins or ("*",)


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value)
    except ValueError:
        parsed = 0
    if parsed <= 0:
        logger.warning("Invalid %s %r; using %d.", key, value, default)
        return default
    return parsed


def _format_env_value(key: str, value: Any) -> str:
    if value is None:
        return "<unset>"
    if not isinstance(value, str):
        return str(value)
    if key in SECRET_KEYS:
        if value == "":
            return "<unset>"
        return f"****{value[-4:]}" if len(value) > 4 else "****"
    if value == "":
        return "<empty>"
    return value


def _resolve_prompt_path(path_value: str) -> pathlib.Path:
    path = pathlib.Path(path_value)
    if not path.is_absolute():
        path = (pathlib.Path(__file__).resolve().parent / path).resolve()
    return path


def load_system_prompt(inline: Optional[str], path_value: Optional[str]) -> Tuple[str, str, Optional[str]]:
    if inline and inline.strip():
        return inline.strip(), "env", None
    if not path_value:
        return DEFAULT_SYSTEM_PROMPT, "default", None

    path = _resolve_prompt_path(path_value)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("System prompt file not found: %s. Falling back to default.", path)
        return DEFAULT_SYSTEM_PROMPT, "default", str(path)
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning(
            "Failed to read system prompt file %s: %s. Falling back to default.",
            path,
            exc,
        )
        return DEFAULT_SYSTEM_PROMPT, "default", str(path)

    text = text.strip()
    if text == "":
        logger.warning("System prompt file %s is empty. Falling back to default.", path)
        return DEFAULT_SYSTEM_PROMPT, "default", str(path)
    return text, "file", str(path)


def log_env_config(settings: Settings) -> None:
    values = {
        "OPENAI_API_KEY": settings.openai_api_key,
        "OPENAI_VECTOR_STORE_ID": settings.vector_store_id,
        "OPENAI_MODEL": settings.model,
        "SYSTEM_PROMPT_SOURCE": settings.system_prompt_source,
        "SYSTEM_PROMPT_PATH": settings.system_prompt_path,
        "SYSTEM_PROMPT_LENGTH": len(settings.system_prompt or ""),
        "CORS_ALLOWED_ORIGINS": ",".join(settings.allowed_origins),
        "SOURCES_STRATEGY": settings.sources_strategy,
        "PRETTY_SOURCE_NAMES": settings.pretty_source_names,
        "MAX_MESSAGE_CHARS": settings.max_message_chars,
    }

    logger.info("dotenv loaded: %s", DOTENV_LOADED)
    logger.info("Environment configuration:")
    for key, value in values.items():
        logger.info("  %s=%s", key, _format_env_value(key, value))


def cors_headers(origin: Optional[str]) -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": origin or "*",
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
    }


_openai_clients: Dict[Settings, AsyncOpenAI] = {}


def openai_client(settings: Settings) -> AsyncOpenAI:
    """One shared client (and connection pool) per settings; closed on shutdown."""
    if not settings.openai_api_key:
        raise RuntimeError("Missing OPENAI_API_KEY")
    client = _openai_clients.get(settings)
    if client is None:
        # upstream failures are surfaced to the caller as-is
        client = AsyncOpenAI(api_key=settings.openai_api_key, max_retries=0)
        _openai_clients[settings] = client
    return client


async def close_openai_clients() -> None:
    while _openai_clients:
        _, client = _openai_clients.popitem()
        await client.close()


def build_payload(settings: Settings, message: str, stream: bool) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "model": settings.model,
        "instructions": settings.system_prompt,
        "tools": [{"type": "file_search", "vector_store_ids": [settings.vector_store_id]}],
        "input": message,
        "stream": stream,
    }
    if stream and settings.sources_strategy != "text":
        payload["include"] = ["file_search_call.results"]
    return payload


@asynccontextmanager
async def open_upstream_stream(client: AsyncOpenAI, settings: Settings, message: str):
    """Open a streamed Responses call and yield its raw SSE byte iterator."""
    payload = build_payload(settings, message, stream=True)
    logger.info("Calling Responses API (stream), model=%s vector_store=%s", settings.model, settings.vector_store_id)
    async with client.responses.with_streaming_response.create(**payload) as response:
        yield response.iter_bytes()


def file_name_resolver(client: AsyncOpenAI):
    async def resolve(file_id: str) -> Optional[str]:
        file_obj = await client.files.retrieve(file_id)
        return getattr(file_obj, "filename", None)

    return resolve


def _field(obj: Any, key: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def extract_answer_text(response_obj: Any) -> str:
    output_text = _field(response_obj, "output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text

    # Fallback: first message item in response.output
    for item in _field(response_obj, "output") or []:
        if _field(item, "type") != "message":
            continue
        parts = []
        for c in _field(item, "content") or []:
            text = _field(c, "text")
            parts.append(text if isinstance(text, str) else "")
        return "".join(parts)
    return ""


def upstream_error_response(exc: APIStatusError, headers: Dict[str, str]) -> Response:
    body = exc.response.text if exc.response is not None else ""
    if not body:
        body = json.dumps({"error": str(exc)})
    logger.warning("Upstream returned %s: %.300s", exc.status_code, body)
    return Response(content=body, status_code=exc.status_code, media_type="application/json", headers=headers)


# -----------------------------
# FastAPI app
# -----------------------------
app = FastAPI(title="Docs Chat Relay (OpenAI Responses + File Search)")


class ChatRequest(BaseModel):
    message: str = ""

    @field_validator("message", mode="before")
    @classmethod
    def coerce_message(cls, value: Any) -> str:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)


class AnswerResponse(BaseModel):
    answer: str
    sources: List[str]


async def read_message(request: Request, settings: Settings, headers: Dict[str, str]) -> str:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Bad JSON", headers=headers)

    req = ChatRequest.model_validate(body) if isinstance(body, dict) else ChatRequest()
    message = req.message[: settings.max_message_chars].strip()
    if not message:
        raise HTTPException(status_code=400, detail="Missing 'message'", headers=headers)
    return message


async def prepare_chat(request: Request, settings: Settings) -> Tuple[str, Dict[str, str]]:
    """Shared checks for every chat route: origin, body, then configuration."""
    origin = request.headers.get("origin")
    headers = cors_headers(origin)
    if not settings.origin_allowed(origin):
        raise HTTPException(status_code=403, detail="Forbidden", headers=headers)

    message = await read_message(request, settings, headers)

    missing = settings.missing()
    if missing:
        raise HTTPException(
            status_code=500,
            detail=f"Server not configured ({' / '.join(missing)})",
            headers=headers,
        )
    return message, headers


@app.on_event("startup")
def startup_event():
    log_env_config(get_settings())


@app.on_event("shutdown")
async def shutdown_event():
    await close_openai_clients()


@app.get("/", response_class=HTMLResponse)
def root(settings: Settings = Depends(get_settings)):
    html = """
<!doctype html>
<html>
<head>
  <meta charset="utf-8" />
  <title>Ask my docs</title>
  <style>
    :root {
      --bg: #f7f5ef;
      --panel: #ffffff;
      --ink: #1a1a1a;
      --muted: #5d5d5d;
      --line: #1d1d1d;
      --accent: #0f766e;
    }
    * { box-sizing: border-box; }
    body {
      font-family: "JetBrains Mono", "IBM Plex Mono", "Menlo", "Consolas", monospace;
      margin: 0;
      color: var(--ink);
      background: var(--bg);
    }
    header {
      padding: 16px 18px;
      background: var(--panel);
      border-bottom: 2px solid var(--line);
    }
    header b { font-size: 12px; letter-spacing: 0.12em; text-transform: uppercase; }
    #wrap { max-width: 860px; margin: 0 auto; padding: 16px; }
    #chat {
      height: 70vh;
      overflow: auto;
      background: var(--panel);
      border: 2px solid var(--line);
      padding: 12px;
    }
    .msg { margin: 12px 0; display: flex; }
    .msg .bubble {
      padding: 10px 12px;
      max-width: 78%;
      white-space: pre-wrap;
      line-height: 1.35;
      border: 2px solid var(--line);
    }
    .user { justify-content: flex-end; }
    .user .bubble { background: #efefef; }
    .assistant { justify-content: flex-start; }
    .assistant .bubble { background: #ffffff; border-style: dashed; }
    .sources { margin-top: 8px; color: var(--muted); font-size: 12px; }
    .error { color: #8a1f1f; font-size: 12px; margin-top: 8px; }
    #bar { display: flex; gap: 10px; margin-top: 12px; }
    #input {
      flex: 1;
      padding: 10px 12px;
      border: 2px solid var(--line);
      outline: none;
    }
    #input:focus { border-color: var(--accent); }
    button {
      padding: 10px 12px;
      border: 2px solid var(--line);
      background: #ffffff;
      cursor: pointer;
      text-transform: uppercase;
      letter-spacing: 0.1em;
      font-size: 11px;
    }
  </style>
</head>
<body>
  <header><b>Ask my docs</b></header>
  <div id="wrap">
    <div id="chat"></div>
    <div id="bar">
      <input id="input" placeholder="Ask a question..." maxlength="__MAX_MESSAGE_CHARS__" />
      <button id="send">Send</button>
    </div>
  </div>

<script>
  function addMsg(role, text) {
    const chat = document.getElementById('chat');
    const div = document.createElement('div');
    div.className = 'msg ' + role;
    const bubble = document.createElement('div');
    bubble.className = 'bubble';
    bubble.textContent = text;
    div.appendChild(bubble);
    chat.appendChild(div);
    chat.scrollTop = chat.scrollHeight;
    return bubble;
  }

  function addNote(bubble, className, text) {
    const note = document.createElement('div');
    note.className = className;
    note.textContent = text;
    bubble.appendChild(note);
  }

  function handleEvent(bubble, state, evt) {
    if (typeof evt.output_text === 'string') {
      state.text += evt.output_text;
      bubble.firstChild.textContent = state.text;
      return;
    }
    if (evt.done === true || evt.interrupted) {
      if (evt.sources && evt.sources.length) {
        addNote(bubble, 'sources', 'Sources: ' + evt.sources.join(', '));
      }
      if (evt.interrupted) {
        addNote(bubble, 'error', 'Answer interrupted: ' + (evt.error || 'unknown error'));
      }
    }
  }

  async function send() {
    const inp = document.getElementById('input');
    const text = inp.value.trim();
    if (!text) return;
    inp.value = '';
    addMsg('user', text);
    const bubble = addMsg('assistant', '');
    bubble.appendChild(document.createTextNode('...'));
    const state = { text: '' };

    try {
      const r = await fetch('/api/chat', {
        method: 'POST',
        headers: { 'Content-Type': 'application/json' },
        body: JSON.stringify({ message: text })
      });
      if (!r.ok || !r.body) {
        bubble.firstChild.textContent = 'Error ' + r.status + ': ' + (await r.text());
        return;
      }
      const reader = r.body.getReader();
      const decoder = new TextDecoder();
      let buffer = '';
      while (true) {
        const { done, value } = await reader.read();
        if (done) break;
        buffer += decoder.decode(value, { stream: true });
        const lines = buffer.split('\\n');
        buffer = lines.pop();
        for (const line of lines) {
          if (!line.startsWith('data:')) continue;
          const data = line.slice(5).trim();
          if (!data || data === '[DONE]') continue;
          try { handleEvent(bubble, state, JSON.parse(data)); } catch (e) {}
        }
      }
    } catch (err) {
      addNote(bubble, 'error', 'Something went wrong while contacting the server.');
    }
  }

  document.getElementById('send').addEventListener('click', send);
  document.getElementById('input').addEventListener('keydown', (e) => {
    if (e.key === 'Enter') send();
  });
</script>
</body>
</html>
        """
    return HTMLResponse(html.replace("__MAX_MESSAGE_CHARS__", str(settings.max_message_chars)))


@app.get("/api/health")
def health(settings: Settings = Depends(get_settings)):
    return {"ok": True, "configured": not settings.missing(), "model": settings.model}


@app.options("/api/chat")
@app.options("/api/chat/answer")
@app.options("/api/chat/raw")
def preflight(request: Request):
    return Response(status_code=204, headers=cors_headers(request.headers.get("origin")))


@app.post("/api/chat")
async def chat(request: Request, settings: Settings = Depends(get_settings)):
    message, headers = await prepare_chat(request, settings)

    client = openai_client(settings)
    stack = AsyncExitStack()
    try:
        chunks = await stack.enter_async_context(open_upstream_stream(client, settings, message))
    except APIStatusError as exc:
        await stack.aclose()
        return upstream_error_response(exc, headers)
    except APIConnectionError as exc:
        await stack.aclose()
        logger.warning("Upstream request failed: %s", exc)
        raise HTTPException(status_code=502, detail=f"Upstream request failed: {exc}", headers=headers)

    relay = StreamRelay(
        resolver=file_name_resolver(client),
        strategy=settings.sources_strategy,
        pretty_names=settings.pretty_source_names,
    )

    async def events():
        try:
            async for frame in relay.relay(chunks):
                yield frame
        except asyncio.CancelledError:
            logger.info("Client disconnected after %d chars; releasing upstream stream.", len(relay.answer))
            raise
        finally:
            await stack.aclose()

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", **headers},
    )


@app.post("/api/chat/answer", response_model=AnswerResponse)
async def chat_answer(request: Request, settings: Settings = Depends(get_settings)):
    message, headers = await prepare_chat(request, settings)

    client = openai_client(settings)
    logger.info("Calling Responses API, model=%s vector_store=%s", settings.model, settings.vector_store_id)
    try:
        resp = await client.responses.create(**build_payload(settings, message, stream=False))
    except APIStatusError as exc:
        return upstream_error_response(exc, headers)
    except APIConnectionError as exc:
        logger.warning("Upstream request failed: %s", exc)
        raise HTTPException(status_code=502, detail=f"Upstream request failed: {exc}", headers=headers)

    answer = extract_answer_text(resp)
    sources = extract_sources(answer, strategy="text")
    return Response(
        content=AnswerResponse(answer=answer, sources=sources).model_dump_json(),
        media_type="application/json",
        headers=headers,
    )


@app.post("/api/chat/raw")
async def chat_raw(request: Request, settings: Settings = Depends(get_settings)):
    message, headers = await prepare_chat(request, settings)

    client = openai_client(settings)
    logger.info("Calling Responses API (raw), model=%s vector_store=%s", settings.model, settings.vector_store_id)
    try:
        raw = await client.responses.with_raw_response.create(**build_payload(settings, message, stream=False))
    except APIStatusError as exc:
        return upstream_error_response(exc, headers)
    except APIConnectionError as exc:
        logger.warning("Upstream request failed: %s", exc)
        raise HTTPException(status_code=502, detail=f"Upstream request failed: {exc}", headers=headers)

    http_response = raw.http_response
    return Response(
        content=http_response.content,
        status_code=http_response.status_code,
        media_type="application/json",
        headers=headers,
    )


# Entry point for: python app.py
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
