"""Conversation message and document upload services."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

from knowrithm.codec import FileDescriptor
from knowrithm.exceptions import StreamError, ValidationError
from knowrithm.streaming import MessageStream

if TYPE_CHECKING:
    from knowrithm.client import KnowrithmClient

logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_FIELD = "files"


class MessageService:
    """Send chat messages and subscribe to the reply stream."""

    def __init__(self, client: KnowrithmClient) -> None:
        self.client = client

    async def send_message(
        self,
        conversation_id: str,
        message: str,
        *,
        headers: Mapping[str, str] | None = None,
        stream: bool = False,
        stream_url: str | None = None,
        stream_timeout: float | None = None,
        event_types: Iterable[str] | None = None,
        raw_events: bool = False,
    ) -> Any:
        """Post a message; with ``stream=True`` return the reply's MessageStream."""
        payload = await self.client.request(
            "POST",
            f"/conversation/{conversation_id}/chat",
            data={"message": message},
            headers=headers,
        )
        if not stream:
            return payload

        return await self.stream_conversation_messages(
            conversation_id,
            headers=headers,
            stream_url=stream_url,
            stream_timeout=stream_timeout,
            event_types=event_types,
            raw_events=raw_events,
            initial_metadata=payload if isinstance(payload, Mapping) else None,
        )

    async def stream_conversation_messages(
        self,
        conversation_id: str,
        *,
        headers: Mapping[str, str] | None = None,
        stream_url: str | None = None,
        stream_timeout: float | None = None,
        event_types: Iterable[str] | None = None,
        raw_events: bool = False,
        initial_metadata: Mapping[str, Any] | None = None,
    ) -> MessageStream:
        """Open the event stream of a conversation.

        With ``raw_events`` event data is left as text instead of being parsed as JSON.
        """
        url = self.client.resolve_stream_url(conversation_id, initial_metadata, stream_url)
        if not url:
            raise StreamError(
                "Streaming is not configured. Provide 'stream_url' or set "
                "stream_path_template/stream_base_url in the configuration."
            )

        metadata: dict[str, Any] = {"conversation_id": conversation_id}
        metadata.update(initial_metadata or {})
        return await self.client.open_stream(
            url,
            headers=headers,
            timeout=stream_timeout,
            event_types=event_types,
            parse_json=not raw_events,
            metadata=metadata,
        )


class DocumentService:
    """Upload documents for an agent."""

    def __init__(self, client: KnowrithmClient) -> None:
        self.client = client

    async def upload_documents(
        self,
        agent_id: str,
        *,
        file_paths: Sequence[str | Path] = (),
        files: Sequence[FileDescriptor] = (),
        urls: Sequence[str] | None = None,
        url: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        payload: dict[str, Any] = {"agent_id": agent_id}
        for key, value in (metadata or {}).items():
            if value is not None:
                payload[key] = value
        if urls:
            payload["urls"] = list(urls)
        if url:
            payload["url"] = url

        descriptors = list(files)
        for file_path in file_paths:
            path = Path(file_path)
            try:
                content = path.read_bytes()
            except OSError as e:
                raise ValidationError(
                    f'Failed to read document at path "{file_path}": {e}',
                    field_name="file_paths",
                    value=str(file_path),
                ) from e
            descriptors.append(FileDescriptor(DEFAULT_UPLOAD_FIELD, content, filename=path.name))

        logger.debug("Uploading %d document(s) for agent %s", len(descriptors), agent_id)
        return await self.client.request(
            "POST",
            "/document/upload",
            data=payload,
            files=descriptors or None,
            headers=headers,
        )
