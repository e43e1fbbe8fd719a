# results.py
# Normalizes heterogeneous tool server outputs into one tagged union before
# the Observer sees them.
#
# Third-party servers return MCP CallToolResult objects, plain dicts, JSON
# text, API error envelopes or nothing at all. Everything downstream only
# ever sees TextOutput, JsonOutput, BinaryOutput or EmptyOutput. Error
# envelopes become ToolCallError(REMOTE_FAILURE).

import base64
import binascii
import json
from typing import Any

from mcp_workflow.errors import ToolCallError
from mcp_workflow.models import (
    BinaryOutput,
    EmptyOutput,
    JsonOutput,
    TextOutput,
    ToolCallErrorKind,
    ToolOutput,
)

_BINARY_TYPES = ("image", "audio")


def _decoded_size(data: Any) -> int:
    if isinstance(data, (bytes, bytearray)):
        return len(data)
    if not isinstance(data, str):
        return 0
    try:
        return len(base64.b64decode(data, validate=False))
    except (binascii.Error, ValueError):
        return len(data)


def _api_error(data: Any) -> str | None:
    """Detect error envelopes embedded in an otherwise successful payload."""
    if not isinstance(data, dict):
        return None
    code = data.get("error_code")
    if code not in (None, 0, "0"):
        return str(data.get("error_message") or f"API error code {code}")
    status = data.get("status")
    if isinstance(status, dict):
        return _api_error(status)
    if set(data) <= {"error", "message", "code"} and data.get("error"):
        error = data["error"]
        if isinstance(error, dict):
            return str(error.get("message") or error)
        return str(error)
    return None


def _from_text(text: str) -> ToolOutput:
    text = text.strip()
    if not text:
        return EmptyOutput()
    if text[0] in "{[":
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return TextOutput(text=text)
        message = _api_error(data)
        if message is not None:
            raise ToolCallError(ToolCallErrorKind.REMOTE_FAILURE, f"API error: {message}")
        return JsonOutput(data=data)
    return TextOutput(text=text)


def _part(item: Any) -> dict[str, Any]:
    if hasattr(item, "model_dump"):
        return item.model_dump(mode="json")
    if isinstance(item, dict):
        return item
    return {"type": "text", "text": str(item)}


def _from_content(content: Any) -> ToolOutput:
    items = content if isinstance(content, list) else [content]
    texts: list[str] = []
    binaries: list[BinaryOutput] = []

    for raw in items:
        part = _part(raw)
        kind = part.get("type")
        if kind in _BINARY_TYPES:
            binary = BinaryOutput(
                mime_type=part.get("mimeType") or part.get("mime_type") or "application/octet-stream",
                size=_decoded_size(part.get("data")),
            )
            binaries.append(binary)
            texts.append(f"[binary {binary.mime_type}, {binary.size} bytes]")
        elif kind == "resource":
            resource = part.get("resource") or {}
            if "text" in resource:
                texts.append(str(resource["text"]))
            else:
                binary = BinaryOutput(
                    mime_type=resource.get("mimeType") or "application/octet-stream",
                    size=_decoded_size(resource.get("blob")),
                )
                binaries.append(binary)
                texts.append(f"[resource {resource.get('uri', '')}, {binary.size} bytes]")
        elif kind == "resource_link":
            texts.append(f"[link {part.get('uri', '')}]")
        elif "text" in part:
            texts.append(str(part["text"]))
        else:
            texts.append(json.dumps(part, ensure_ascii=False))

    if binaries and len(binaries) == len(items):
        return binaries[0] if len(binaries) == 1 else JsonOutput(data=[b.model_dump() for b in binaries])
    if not texts:
        return EmptyOutput()
    if len(texts) == 1:
        return _from_text(texts[0])
    return TextOutput(text="\n".join(texts))


def _error_text(payload: dict[str, Any]) -> str:
    content = payload.get("content")
    if content:
        output = _from_content(content)
        if isinstance(output, TextOutput):
            return output.text
        if isinstance(output, JsonOutput):
            return json.dumps(output.data, ensure_ascii=False)
    return str(payload.get("error") or "tool reported an error")


def normalize_result(raw: Any) -> ToolOutput:
    """Map a raw tool result onto the ToolOutput union. Raises ToolCallError for error results."""
    if raw is None:
        return EmptyOutput()
    if hasattr(raw, "model_dump"):
        raw = raw.model_dump(mode="json")

    if isinstance(raw, (bytes, bytearray)):
        return BinaryOutput(size=len(raw))
    if isinstance(raw, str):
        return _from_text(raw)
    if isinstance(raw, list):
        return _from_content(raw) if raw else EmptyOutput()
    if not isinstance(raw, dict):
        return JsonOutput(data=raw)

    if raw.get("isError") or raw.get("is_error"):
        raise ToolCallError(ToolCallErrorKind.REMOTE_FAILURE, _error_text(raw))
    if raw.get("error") and "content" not in raw:
        raise ToolCallError(ToolCallErrorKind.REMOTE_FAILURE, _error_text(raw))

    if raw.get("content"):
        return _from_content(raw["content"])
    structured = raw.get("structuredContent")
    if structured is not None:
        return JsonOutput(data=structured)
    if "content" in raw:
        return EmptyOutput()

    message = _api_error(raw)
    if message is not None:
        raise ToolCallError(ToolCallErrorKind.REMOTE_FAILURE, f"API error: {message}")
    return JsonOutput(data=raw)


def output_summary(output: ToolOutput | None, limit: int = 500) -> str:
    """Short plain-text rendering for prompts and logs."""
    if output is None or isinstance(output, EmptyOutput):
        return "(no output)"
    if isinstance(output, TextOutput):
        text = output.text
    elif isinstance(output, JsonOutput):
        text = json.dumps(output.data, ensure_ascii=False, default=str)
    else:
        text = f"[binary {output.mime_type}, {output.size} bytes]"
    return text if len(text) <= limit else text[:limit] + "…"


def output_value(output: ToolOutput | None) -> Any:
    """The plain payload of an output, for final results handed to callers."""
    if output is None or isinstance(output, EmptyOutput):
        return None
    if isinstance(output, TextOutput):
        return output.text
    if isinstance(output, JsonOutput):
        return output.data
    return output.model_dump()
