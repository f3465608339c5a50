"""Meeting name generation: one non-chunked LLM call over the transcript."""

from __future__ import annotations

import logging

from meeting_pipeline.errors import RemoteError
from meeting_pipeline.ingestion.models import MeetingMetadata
from meeting_pipeline.ingestion.storage import ArtifactKind, MeetingStore
from meeting_pipeline.services.client import ExternalServiceClient
from meeting_pipeline.services.llm import CompletionRequest
from meeting_pipeline.summarization.prompts import name_request

logger = logging.getLogger(__name__)

MAX_TITLE_CHARS = 120


def clean_title(raw: str) -> str:
    """First non-empty line of a model reply, without quotes or trailing dots."""
    for line in raw.splitlines():
        line = line.strip().lstrip("#").strip()
        if line.lower().startswith("title:"):
            line = line[len("title:") :].strip()
        line = line.strip("\"'`*").rstrip(".").strip()
        if line:
            return line[:MAX_TITLE_CHARS].rstrip()
    return ""


async def generate_meeting_name(
    store: MeetingStore,
    client: ExternalServiceClient[CompletionRequest, str],
    meeting_id: str,
    language: str = "en",
    max_chars: int | None = None,
) -> MeetingMetadata:
    """Ask the model for a title and store it as the meeting name.

    Only the first *max_chars* characters of the transcript are sent, so the
    request stays within one chunk.

    Raises:
        InputNotFound: The meeting has no transcript yet.
        RemoteError: The model answered with an empty title.
    """
    text = store.read_input(meeting_id, ArtifactKind.TRANSCRIPT_TEXT)
    if max_chars is not None:
        text = text[:max_chars]

    title = clean_title(await client.call(name_request(text, language)))
    if not title:
        raise RemoteError("Language model returned an empty meeting name")

    metadata = store.rename_meeting(meeting_id, title)
    logger.info("Named meeting %s: %s", meeting_id, title)
    return metadata
