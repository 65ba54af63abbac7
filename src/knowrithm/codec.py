"""Wire codec: request body encoding and response body decoding.

Request bodies are one of three variants (no body, JSON, multipart). File
contents arrive in many shapes and are normalized into a single tagged
variant before they are handed to httpx.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from knowrithm.exceptions import ValidationError

SUCCESS_PAYLOAD: dict[str, Any] = {"success": True}


# =============================================================================
# Body variants
# =============================================================================


@dataclass(frozen=True)
class NoBody:
    """The request carries no payload."""


@dataclass(frozen=True)
class JsonBody:
    """A JSON payload (folded into the query string for GET)."""

    value: Any


@dataclass(frozen=True)
class FileDescriptor:
    """One file part of a multipart upload.

    The caller owns ``content``; it is read and forwarded, never mutated or closed.
    """

    field_name: str
    content: Any
    filename: str | None = None
    content_type: str | None = None


@dataclass(frozen=True)
class MultipartBody:
    """Form fields plus one or more files."""

    fields: Mapping[str, Any] = field(default_factory=dict)
    files: Sequence[FileDescriptor] = ()


Body = NoBody | JsonBody | MultipartBody


@dataclass(frozen=True)
class BinaryPart:
    """Canonical form of a file content: a stream passed through, or one contiguous blob."""

    kind: Literal["stream", "blob"]
    payload: Any


@dataclass
class EncodedBody:
    """Keyword arguments for ``httpx.AsyncClient.request``."""

    headers: dict[str, str]
    params: dict[str, Any]
    json: Any = None
    data: dict[str, str] | None = None
    files: list[tuple[str, tuple[str | None, Any] | tuple[str | None, Any, str]]] | None = None

    def request_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"headers": self.headers, "params": self.params}
        if self.files is not None:
            kwargs["files"] = self.files
            if self.data:
                kwargs["data"] = self.data
        elif self.json is not None:
            kwargs["json"] = self.json
        return kwargs


# =============================================================================
# Binary normalization
# =============================================================================


def _is_readable_stream(value: Any) -> bool:
    return callable(getattr(value, "read", None))


def normalize_binary(content: Any) -> BinaryPart:
    """Map any supported byte source to a stream or a single contiguous blob.

    - readable streams and open file handles pass through
    - ``bytes`` passes through as a blob
    - ``bytearray``, ``memoryview`` and any buffer-protocol object (e.g.
      ``array.array``) are copied into one ``bytes`` blob
    """
    if content is None:
        raise ValidationError("File content is required", field_name="content")
    if _is_readable_stream(content):
        return BinaryPart("stream", content)
    if isinstance(content, bytes):
        return BinaryPart("blob", content)
    if isinstance(content, str):
        raise ValidationError(
            "File content must be binary; encode text or open the file first",
            field_name="content",
            value=type(content).__name__,
        )
    try:
        view = memoryview(content)
    except TypeError:
        raise ValidationError(
            f"Unsupported file content type: {type(content).__name__}",
            field_name="content",
        ) from None
    with view:
        return BinaryPart("blob", view.tobytes())


def _form_value(value: Any) -> str:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _has_header(headers: Mapping[str, str], name: str) -> str | None:
    target = name.lower()
    for key in headers:
        if key.lower() == target:
            return key
    return None


def clean_params(params: Mapping[str, Any] | None) -> dict[str, Any]:
    """Drop query parameters whose value is None."""
    if not params:
        return {}
    return {key: value for key, value in params.items() if value is not None}


def encode_request(
    method: str,
    body: Body,
    headers: Mapping[str, str],
    params: Mapping[str, Any] | None = None,
) -> EncodedBody:
    """Encode a body variant into httpx request arguments."""
    encoded = EncodedBody(headers=dict(headers), params=clean_params(params))

    if isinstance(body, MultipartBody):
        files = []
        for descriptor in body.files:
            part = normalize_binary(descriptor.content)
            if descriptor.content_type:
                files.append((descriptor.field_name, (descriptor.filename, part.payload, descriptor.content_type)))
            else:
                files.append((descriptor.field_name, (descriptor.filename, part.payload)))
        encoded.files = files
        encoded.data = {
            key: _form_value(value) for key, value in body.fields.items() if value is not None
        }
        # httpx writes the multipart boundary itself.
        content_type_key = _has_header(encoded.headers, "Content-Type")
        if content_type_key:
            del encoded.headers[content_type_key]
        return encoded

    if isinstance(body, JsonBody) and body.value is not None:
        if method.upper() == "GET":
            if isinstance(body.value, Mapping):
                encoded.params.update(clean_params(body.value))
            return encoded
        if not _has_header(encoded.headers, "Content-Type"):
            encoded.headers["Content-Type"] = "application/json"
        encoded.json = body.value

    return encoded


# =============================================================================
# Decoding
# =============================================================================


def encode_json(value: Any) -> bytes:
    return json.dumps(value, ensure_ascii=False).encode("utf-8")


def decode_body(raw: Any) -> Any:
    """Decode a JSON body, falling back to the raw text.

    Values that are already decoded (anything but bytes/str) are returned as is.
    """
    if isinstance(raw, (bytes, bytearray)):
        text = bytes(raw).decode("utf-8", errors="replace")
    elif isinstance(raw, str):
        text = raw
    else:
        return raw
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (dict, list)) and not value)


def decode_success(response: httpx.Response) -> Any:
    """Decode a 2xx response; empty bodies become ``{"success": True}``."""
    payload = decode_body(response.content)
    if _is_empty(payload):
        return dict(SUCCESS_PAYLOAD)
    return payload


def decode_error_body(response: httpx.Response) -> dict[str, Any]:
    """Decode an error response into a mapping, falling back to the status text."""
    try:
        payload = decode_body(response.content)
    except httpx.ResponseNotRead:
        payload = None
    if isinstance(payload, dict):
        return dict(payload)
    if _is_empty(payload):
        return {"detail": response.reason_phrase or f"HTTP {response.status_code}"}
    return {"detail": payload}


def enrich_error(data: Mapping[str, Any], operation: str, attempt: int) -> dict[str, Any]:
    """Merge the diagnostic bag (operation label, 1-based attempt) into an error body."""
    enriched = dict(data)
    enriched["operation"] = operation
    enriched["attempt_number"] = attempt
    return enriched


def error_message(data: Mapping[str, Any], status: int | None) -> str:
    """Pick the human message: ``detail``, then ``message``, then ``HTTP <status>``."""
    for key in ("detail", "message"):
        value = data.get(key)
        if value:
            return value if isinstance(value, str) else json.dumps(value)
    return f"HTTP {status}" if status is not None else "Request failed"


def error_code(data: Mapping[str, Any]) -> str | None:
    value = data.get("error_code")
    return str(value) if value is not None else None
