"""Schema-typed summaries: what the model returns in the ``structured`` summary format."""

from __future__ import annotations

from typing import TypeVar

from pydantic import BaseModel, Field, ValidationError

from meeting_pipeline.errors import RemoteError

ModelT = TypeVar("ModelT", bound=BaseModel)


class Attendee(BaseModel):
    id: int
    name: str


class KeyFacts(BaseModel):
    """Who attended and who held the meeting roles."""

    moderator: str | None = Field(default=None, description="Person who moderated the meeting.")
    protocol_keeper: str | None = Field(default=None, description="Person who kept the minutes.")
    timekeeper: str | None = Field(default=None, description="Person who kept the time.")
    attendees: list[Attendee] = Field(default_factory=list)

    def merge(self, other: KeyFacts) -> KeyFacts:
        """Later roles win; attendees are added once per id, in first-seen order."""
        seen = {a.id for a in self.attendees}
        attendees = list(self.attendees)
        for attendee in other.attendees:
            if attendee.id not in seen:
                seen.add(attendee.id)
                attendees.append(attendee)
        return KeyFacts(
            moderator=other.moderator or self.moderator,
            protocol_keeper=other.protocol_keeper or self.protocol_keeper,
            timekeeper=other.timekeeper or self.timekeeper,
            attendees=attendees,
        )

    def is_empty(self) -> bool:
        return not (self.moderator or self.protocol_keeper or self.timekeeper or self.attendees)

    def to_markdown(self) -> str:
        lines = []
        for label, value in (
            ("Moderation", self.moderator),
            ("Protocol", self.protocol_keeper),
            ("Timekeeping", self.timekeeper),
        ):
            if value:
                lines.append(f"- **{label}:** {value}")
        if self.attendees:
            lines.append("- **Attendees:**")
            lines.extend(f"  - [{a.id}] {a.name}" for a in self.attendees)
        return "\n".join(lines)


class Topic(BaseModel):
    title: str
    bullet_points: list[str] = Field(default_factory=list)
    sub_topics: list[Topic] = Field(default_factory=list)

    def to_markdown(self, level: int = 3) -> str:
        lines = [f"{'#' * min(level, 6)} {self.title}"]
        lines.extend(f"- {point}" for point in self.bullet_points)
        for sub in self.sub_topics:
            lines.append(sub.to_markdown(level + 1))
        return "\n".join(lines)


class ToDo(BaseModel):
    task: str
    assignees: list[str] = Field(default_factory=list)

    def to_markdown(self) -> str:
        if self.assignees:
            return f"- {self.task} ({', '.join(self.assignees)})"
        return f"- {self.task}"


def _sections(key_facts: KeyFacts, topics: list[Topic], todos: list[ToDo]) -> list[str]:
    parts = []
    if not key_facts.is_empty():
        parts.append("## Key Facts\n" + key_facts.to_markdown())
    if topics:
        parts.append("## Topics\n" + "\n\n".join(t.to_markdown() for t in topics))
    if todos:
        parts.append("## To-Dos\n" + "\n".join(t.to_markdown() for t in todos))
    return parts


class ChunkSummary(BaseModel):
    """Summary of one transcript section."""

    key_facts: KeyFacts = Field(default_factory=KeyFacts)
    topics: list[Topic] = Field(default_factory=list)
    todos: list[ToDo] = Field(default_factory=list)

    def to_markdown(self) -> str:
        return "\n\n".join(_sections(self.key_facts, self.topics, self.todos))


class Title(BaseModel):
    emoji: str = ""
    text: str

    def __str__(self) -> str:
        return f"{self.emoji} {self.text}".strip()


class FinalSummary(BaseModel):
    """The merged summary of a whole meeting; its title becomes the meeting name."""

    title: Title
    summary: str
    key_facts: KeyFacts = Field(default_factory=KeyFacts)
    topics: list[Topic] = Field(default_factory=list)
    todos: list[ToDo] = Field(default_factory=list)

    def to_markdown(self) -> str:
        parts = [self.summary.strip()]
        parts.extend(_sections(self.key_facts, self.topics, self.todos))
        return "\n\n".join(p for p in parts if p)


def combine_chunk_summaries(summaries: list[ChunkSummary]) -> ChunkSummary:
    """Concatenate topics and to-dos; merge key facts in chunk order."""
    combined = ChunkSummary()
    for summary in summaries:
        combined.key_facts = combined.key_facts.merge(summary.key_facts)
        combined.topics.extend(summary.topics)
        combined.todos.extend(summary.todos)
    return combined


def parse_reply(model: type[ModelT], reply: str) -> ModelT:
    """Validate a JSON model reply, tolerating a surrounding Markdown code fence.

    Raises:
        RemoteError: The reply is not valid JSON for *model*.
    """
    text = reply.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        text = text.rstrip().removesuffix("```")
    try:
        return model.model_validate_json(text)
    except ValidationError as exc:
        raise RemoteError(
            f"Language model returned an invalid {model.__name__} ({exc.error_count()} error(s))"
        ) from exc
