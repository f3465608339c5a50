"""Prompt templates for chunk summaries, the final summary and meeting names.

Templates exist in English and German; ``prompt_language`` selects one.  The
structured variants ask for JSON replies that follow the models in
:mod:`meeting_pipeline.summarization.models`.
"""

from __future__ import annotations

from meeting_pipeline.errors import ConfigError
from meeting_pipeline.services.llm import CompletionRequest
from meeting_pipeline.summarization.models import (
    ChunkSummary,
    FinalSummary,
    KeyFacts,
    combine_chunk_summaries,
)

SUPPORTED_LANGUAGES = ("en", "de")

CHUNK_SYSTEM_PROMPT = {
    "en": (
        "You are a meeting summarization assistant. Summarize the provided meeting "
        "transcript section in a structured format:\n\n"
        "- Context: what was discussed in this section\n"
        "- Key Points: main topics and decisions (bullet points)\n"
        "- Action Items: tasks or next steps (format: - [Person]: Task)\n\n"
        "Keep the summary concise but complete. Keep speaker labels as they appear. "
        "Do not explain abbreviations. Output only the summary."
    ),
    "de": (
        "Sie sind ein Assistent für Meeting-Zusammenfassungen. Fassen Sie den "
        "bereitgestellten Abschnitt eines Meeting-Transkripts strukturiert zusammen:\n\n"
        "- Kontext: worum es in diesem Abschnitt ging\n"
        "- Kernpunkte: Hauptthemen und Entscheidungen (Stichpunkte)\n"
        "- Aufgaben: Aufgaben oder nächste Schritte (Format: - [Person]: Aufgabe)\n\n"
        "Verkürzen Sie nichts zu stark. Behalten Sie die Sprecherbezeichnungen bei. "
        "Erklären Sie keine Abkürzungen. Geben Sie nur die Zusammenfassung aus."
    ),
}

FINAL_SYSTEM_PROMPT = {
    "en": (
        "You are a meeting summarization assistant. You receive summaries of "
        "consecutive sections of a single meeting. Combine them into one structured "
        "summary:\n\n"
        "- Overall Context: the meeting's purpose and main outcome\n"
        "- Key Topics: merge overlapping topics, keep details, remove duplicates\n"
        "- Action Items: grouped by person where possible (format: - [Name]: Task)\n\n"
        "Do not repeat the section headers of the input. Output only the summary."
    ),
    "de": (
        "Sie sind ein Assistent für Meeting-Zusammenfassungen. Sie erhalten "
        "Zusammenfassungen aufeinanderfolgender Abschnitte eines einzigen Meetings. "
        "Kombinieren Sie sie zu einer strukturierten Zusammenfassung:\n\n"
        "- Gesamtkontext: Zweck und wichtigstes Ergebnis des Meetings\n"
        "- Hauptthemen: überlappende Themen zusammenführen, Details bewahren\n"
        "- Aufgaben: nach Person gruppiert (Format: - [Name]: Aufgabe)\n\n"
        "Wiederholen Sie nicht die Überschriften der Eingabe. "
        "Geben Sie nur die Zusammenfassung aus."
    ),
}

NAME_SYSTEM_PROMPT = {
    "en": (
        "You name meetings. Reply with a short, descriptive title of at most eight "
        "words for the meeting transcript provided. Reply with the title only, "
        "without quotes or punctuation at the end."
    ),
    "de": (
        "Sie benennen Meetings. Antworten Sie mit einem kurzen, aussagekräftigen "
        "Titel von höchstens acht Wörtern für das bereitgestellte Transkript. "
        "Antworten Sie nur mit dem Titel, ohne Anführungszeichen."
    ),
}

_LABELS = {
    "en": {
        "context": "Summary of the meeting so far",
        "section": "Transcript section {number} of {total}",
        "part": "Section {number}",
        "transcript": "Transcript",
    },
    "de": {
        "context": "Bisherige Zusammenfassung des Meetings",
        "section": "Transkript-Abschnitt {number} von {total}",
        "part": "Abschnitt {number}",
        "transcript": "Transkript",
    },
}


def check_language(language: str) -> str:
    if language not in SUPPORTED_LANGUAGES:
        raise ConfigError(
            f"Unsupported prompt language {language!r}; expected one of {SUPPORTED_LANGUAGES}"
        )
    return language


def chunk_summary_request(
    text: str, index: int, total: int, context: str = "", language: str = "en"
) -> CompletionRequest:
    """Prompt for one transcript chunk, with the running summary as context."""
    labels = _LABELS[language]
    parts = []
    if context.strip():
        parts.append(f"{labels['context']}:\n{context.strip()}")
    parts.append(f"{labels['section'].format(number=index + 1, total=total)}:\n{text}")
    return CompletionRequest(system=CHUNK_SYSTEM_PROMPT[language], prompt="\n\n".join(parts))


def final_summary_request(chunk_summaries: list[str], language: str = "en") -> CompletionRequest:
    """Prompt that merges all chunk summaries into the final summary."""
    labels = _LABELS[language]
    sections = [
        f"## {labels['part'].format(number=i + 1)}\n{summary.strip()}"
        for i, summary in enumerate(chunk_summaries)
    ]
    return CompletionRequest(system=FINAL_SYSTEM_PROMPT[language], prompt="\n\n".join(sections))


def name_request(transcript_text: str, language: str = "en") -> CompletionRequest:
    labels = _LABELS[language]
    return CompletionRequest(
        system=NAME_SYSTEM_PROMPT[language],
        prompt=f"{labels['transcript']}:\n{transcript_text}",
    )


# --- structured summary format ---

STRUCTURED_CHUNK_SYSTEM_PROMPT = {
    "en": (
        "You are a meeting summarization assistant. Summarize the provided meeting "
        "transcript section as completely as possible and reply with JSON only.\n\n"
        "- key_facts: attendees (with a numeric id each), and who was responsible "
        "for moderation, the protocol and timekeeping. Reuse the ids of the key "
        "facts known so far and add people who are not listed yet.\n"
        "- topics: each with a title, short bullet points and optional sub_topics. "
        "Refer to people by attendee id, e.g. \"[1] asks ...\".\n"
        "- todos: tasks agreed in this section, with the assignees.\n\n"
        "Leave out technical problems and personal anecdotes. "
        "Do not explain abbreviations. Add no comments."
    ),
    "de": (
        "Sie sind ein Assistent für Meeting-Zusammenfassungen. Fassen Sie den "
        "bereitgestellten Abschnitt eines Meeting-Transkripts möglichst vollständig "
        "zusammen und antworten Sie nur mit JSON.\n\n"
        "- key_facts: Teilnehmende (jeweils mit numerischer ID) sowie die "
        "Verantwortlichen für Moderation, Protokoll und Zeitmessung. Verwenden Sie "
        "die IDs der bisherigen Key Facts und ergänzen Sie noch nicht genannte Personen.\n"
        "- topics: jeweils mit Titel, Stichpunkten und optionalen sub_topics. "
        "Nennen Sie Personen über ihre ID, z. B. \"[1] fragt ...\".\n"
        "- todos: in diesem Abschnitt vereinbarte Aufgaben mit den Zuständigen.\n\n"
        "Technische Probleme und persönliche Anekdoten entfallen. "
        "Erklären Sie keine Abkürzungen. Ergänzen Sie keine Kommentare."
    ),
}

STRUCTURED_FINAL_SYSTEM_PROMPT = {
    "en": (
        "You receive the combined section summaries of a single meeting as JSON. "
        "Merge them into the final summary and reply with JSON only.\n\n"
        "- title: a short title and one fitting emoji.\n"
        "- summary: the purpose of the meeting and its main results in a few sentences.\n"
        "- key_facts: attendees and role holders. Roles are not to-dos.\n"
        "- topics: merge overlapping topics, keep the details, avoid repetition.\n"
        "- todos: only tasks that matter after the meeting, with their assignees."
    ),
    "de": (
        "Sie erhalten die zusammengeführten Abschnittszusammenfassungen eines "
        "Meetings als JSON. Erstellen Sie daraus die finale Zusammenfassung und "
        "antworten Sie nur mit JSON.\n\n"
        "- title: ein kurzer Titel und ein passendes Emoji.\n"
        "- summary: Zweck des Meetings und wichtigste Ergebnisse in wenigen Sätzen.\n"
        "- key_facts: Teilnehmende und Rollen. Rollen sind keine To-dos.\n"
        "- topics: überlappende Themen zusammenführen, Details bewahren, "
        "Wiederholungen vermeiden.\n"
        "- todos: nur Aufgaben, die nach dem Meeting relevant sind, mit den Zuständigen."
    ),
}

_KEY_FACT_LABELS = {
    "en": ("Key facts so far", "No key facts yet."),
    "de": ("Bisherige Key Facts", "Noch keine vorhandenen Key Facts."),
}


def structured_chunk_request(
    text: str,
    index: int,
    total: int,
    key_facts: KeyFacts,
    context: str = "",
    language: str = "en",
) -> CompletionRequest:
    """Chunk prompt asking for a :class:`ChunkSummary`, seeded with the key facts so far."""
    label, empty = _KEY_FACT_LABELS[language]
    facts = empty if key_facts.is_empty() else key_facts.model_dump_json()
    section = chunk_summary_request(text, index, total, context, language).prompt
    return CompletionRequest(
        system=STRUCTURED_CHUNK_SYSTEM_PROMPT[language],
        prompt=f"{label}:\n{facts}\n\n{section}",
        schema=ChunkSummary.model_json_schema(),
    )


def structured_final_request(
    chunk_summaries: list[ChunkSummary], language: str = "en"
) -> CompletionRequest:
    """Final prompt over the combined chunk summaries, asking for a :class:`FinalSummary`."""
    combined = combine_chunk_summaries(chunk_summaries)
    return CompletionRequest(
        system=STRUCTURED_FINAL_SYSTEM_PROMPT[language],
        prompt=combined.model_dump_json(indent=2),
        schema=FinalSummary.model_json_schema(),
    )
