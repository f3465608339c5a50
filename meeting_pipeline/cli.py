"""Command-line entry point: ``python -m meeting_pipeline.cli <command>``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from meeting_pipeline.config import get_settings
from meeting_pipeline.errors import PipelineError
from meeting_pipeline.ingestion.models import SummaryArtifact, Transcript
from meeting_pipeline.pipeline.orchestrator import PipelineOrchestrator, build_orchestrator
from meeting_pipeline.pipeline.progress import EventKind, ProgressEvent
from meeting_pipeline.pipeline_config import StageKind

logger = logging.getLogger(__name__)


def _print_progress(event: ProgressEvent) -> None:
    state = event.state
    if event.kind is EventKind.PROGRESS:
        print(f"  [{state.current}/{state.total}] {state.stage.value}")
    elif event.kind is EventKind.STARTED:
        print(f"{state.stage.value}: {state.total} chunk(s) for meeting {state.meeting_id}")
    elif event.kind is EventKind.FAILED:
        print(f"{state.stage.value} failed for meeting {state.meeting_id}")


def _parse_mapping(pairs: list[str]) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for pair in pairs:
        old, sep, new = pair.partition("=")
        if not sep or not old:
            raise ValueError(f"Expected OLD=NEW, got {pair!r}")
        mapping[old] = new
    return mapping


def cmd_import(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    path = Path(args.path)
    metadata = orchestrator.import_meeting(path.read_bytes(), path.name, name=args.name)
    print(metadata.id)
    return 0


def cmd_list(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    for meeting in orchestrator.store.list_meetings():
        print(f"{meeting.id}  {meeting.created_at}  {meeting.name or '(unnamed)'}")
    return 0


async def _run_stages(
    orchestrator: PipelineOrchestrator, meeting_id: str, stages: list[StageKind]
) -> None:
    for stage in stages:
        artifact = await orchestrator.run(meeting_id, stage)
        if isinstance(artifact, Transcript):
            print(f"Transcript: {len(artifact.segments)} segment(s), speakers {artifact.speakers}")
        elif isinstance(artifact, SummaryArtifact):
            print(artifact.final_summary)


def cmd_run(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    if args.stage == "all":
        stages = [StageKind.TRANSCRIBE, StageKind.SUMMARIZE]
    else:
        stages = [StageKind(args.stage)]
    unsubscribe = orchestrator.tracker.subscribe(_print_progress)
    try:
        asyncio.run(_run_stages(orchestrator, args.meeting_id, stages))
    finally:
        unsubscribe()
    return 0


def cmd_status(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    stages = [StageKind(args.stage)] if args.stage else list(StageKind)
    for stage in stages:
        if args.meeting_id:
            print(f"{stage.value}: {orchestrator.run_phase(args.meeting_id, stage).value}")
        else:
            state = orchestrator.query_status(stage)
            status = f"{state.current}/{state.total} ({state.meeting_id})" if state.active else "idle"
            print(f"{stage.value}: {status}")
    return 0


def cmd_rename_speakers(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    transcript = orchestrator.rename_speakers(args.meeting_id, _parse_mapping(args.pairs))
    print(", ".join(transcript.speakers))
    return 0


def cmd_name(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    metadata = asyncio.run(orchestrator.generate_name(args.meeting_id))
    print(metadata.name)
    return 0


def cmd_health(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    health = asyncio.run(orchestrator.services_health())
    print(json.dumps(health, indent=2))
    return 0 if all(health.values()) else 1


def cmd_serve(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run("meeting_pipeline.api.main:app", host=settings.api_host, port=settings.api_port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="meeting-pipeline", description=__doc__)
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("import", help="create a meeting from a recording or JSON transcript")
    p.add_argument("path")
    p.add_argument("--name", default=None)
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("list", help="list meetings")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("run", help="run a stage to completion")
    p.add_argument("meeting_id")
    p.add_argument("stage", choices=[s.value for s in StageKind] + ["all"])
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("status", help="show stage progress or a meeting's run phases")
    p.add_argument("--stage", choices=[s.value for s in StageKind], default=None)
    p.add_argument("--meeting-id", default=None)
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("rename-speakers", help="rename speaker labels (OLD=NEW ...)")
    p.add_argument("meeting_id")
    p.add_argument("pairs", nargs="+")
    p.set_defaults(func=cmd_rename_speakers)

    p = sub.add_parser("name", help="generate a meeting name from the transcript")
    p.add_argument("meeting_id")
    p.set_defaults(func=cmd_name)

    p = sub.add_parser("health", help="check the configured services")
    p.set_defaults(func=cmd_health)

    p = sub.add_parser("serve", help="run the HTTP API")
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    orchestrator = build_orchestrator(get_settings())
    try:
        return args.func(orchestrator, args)
    except (PipelineError, ValueError, OSError) as exc:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
