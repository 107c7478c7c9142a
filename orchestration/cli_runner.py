# orchestration/cli_runner.py
"""Command-line runner operating on a project snapshot JSON file."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path

import structlog
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from config import EXPORTS_DIR, settings
from core.embeddings import create_embedding_provider
from core.errors import StoryLoomError
from core.model_gateway import ModelGateway
from data_access.author_style_repository import JsonFileAuthorStyleRepository
from data_access.summary_repository import JsonFileSummaryRepository
from memory import AuthorStyleLibrary, MemoryStore
from models.project_models import ProjectSnapshot
from models.workflow_models import GenerationMode, Stage
from orchestration.job_coordinator import JobCoordinator
from orchestration.workflow_engine import WorkflowEngine
from orchestration.workflow_state import WorkflowState
from ui.rich_display import RichDisplayManager
from utils.logging import setup_logging

logger = structlog.get_logger(__name__)
console = Console()


def _read_snapshot_sync(path: Path) -> ProjectSnapshot:
    with open(path, encoding="utf-8") as f:
        return ProjectSnapshot.model_validate(json.load(f))


def _write_snapshot_sync(path: Path, snapshot: ProjectSnapshot) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(snapshot.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
    os.replace(tmp_path, path)


async def read_snapshot(path: Path) -> ProjectSnapshot:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, _read_snapshot_sync, path)


async def write_snapshot(path: Path, engine: WorkflowEngine) -> ProjectSnapshot:
    state = engine.state
    if state.project_id is None:
        state.project_id = engine.draft_project_id
    snapshot = ProjectSnapshot(
        project_id=state.project_id,
        name=state.project_name,
        description=state.project_description or None,
        state=state.to_snapshot_state(),
    )
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, _write_snapshot_sync, path, snapshot)
    logger.info("Snapshot written", path=str(path), project_id=snapshot.project_id)
    return snapshot


def build_engine(state: WorkflowState | None = None) -> WorkflowEngine:
    """Engine wired to the configured gateway, embeddings and file-backed memory."""
    memory = MemoryStore(JsonFileSummaryRepository(), create_embedding_provider())
    return WorkflowEngine(ModelGateway(), memory, state, author_styles=build_style_library())


def build_style_library() -> AuthorStyleLibrary:
    return AuthorStyleLibrary(JsonFileAuthorStyleRepository())


async def _close_engine(engine: WorkflowEngine) -> None:
    await engine.gateway.aclose()
    await engine.memory.embedder.aclose()


async def _load_engine(path: Path) -> WorkflowEngine:
    snapshot = await read_snapshot(path)
    state = WorkflowState.from_snapshot_state(snapshot.state)
    state.project_id = snapshot.project_id
    state.project_name = snapshot.name
    state.project_description = snapshot.description or ""
    return build_engine(state)


def print_status(state: WorkflowState) -> None:
    table = Table(title=f"{state.project_name} ({state.project_id or 'unsaved'})")
    table.add_column("Stage")
    table.add_column("Model")
    table.add_column("Complete")
    for stage in Stage:
        marker = "→ " if stage is state.current_stage else ""
        table.add_row(
            f"{marker}{int(stage)}. {stage.label}",
            state.model_for_stage(stage),
            "yes" if state.is_stage_complete(stage) else "no",
        )
    console.print(table)
    if state.chapters:
        chapters = Table(title="Chapters")
        for column in ("#", "Title", "Words", "Quality", "Status"):
            chapters.add_column(column)
        for chapter in state.chapters:
            chapters.add_row(
                str(chapter.number),
                chapter.title,
                str(chapter.word_count),
                f"{chapter.quality.overall}%",
                chapter.status.value,
            )
        console.print(chapters)
    current, total, running = state.progress.as_tuple()
    console.print(f"Last batch: {current}/{total}{' (running)' if running else ''}")


async def cmd_new(args: argparse.Namespace) -> int:
    """Create a project from a source text and plan it through the blueprint."""
    engine = build_engine(WorkflowState(project_name=args.name or Path(args.source).stem))
    try:
        if args.model_id:
            for stage in Stage:
                engine.select_model(stage, args.model_id)
        text = Path(args.source).read_text(encoding="utf-8")
        await engine.analyze_source(args.name or Path(args.source).stem, text, author=args.author)
        engine.advance()
        ideas = await engine.generate_ideas(direction=args.direction or "")
        engine.select_idea(ideas[0].id)
        engine.advance()
        await engine.build_blueprint(chapter_count=args.chapters)
        engine.advance()
        await write_snapshot(Path(args.snapshot), engine)
        print_status(engine.state)
    finally:
        await _close_engine(engine)
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    snapshot = await read_snapshot(Path(args.snapshot))
    state = WorkflowState.from_snapshot_state(snapshot.state)
    state.project_id = snapshot.project_id
    state.project_name = snapshot.name
    print_status(state)
    return 0


async def cmd_generate(args: argparse.Namespace) -> int:
    path = Path(args.snapshot)
    engine = await _load_engine(path)
    display = RichDisplayManager(engine.gateway.accountant)
    coordinator = JobCoordinator(
        engine,
        max_parallel=args.max_parallel,
        on_event=display.handle_event,
    )
    try:
        if args.model_id:
            engine.select_model(Stage.CHAPTER_GENERATION, args.model_id)
        display.start(engine.state.project_name)
        try:
            result = await coordinator.run(GenerationMode(args.mode), args.chapters)
        finally:
            await display.stop()
        await write_snapshot(path, engine)
        for failure in result.failures:
            console.print(
                f"[yellow]Chapter {failure.chapter_number} failed:[/yellow] {failure.error}"
            )
        console.print(
            f"Generated chapters {result.completed_numbers or 'none'} "
            f"of {result.requested}"
        )
        print_status(engine.state)
    finally:
        await _close_engine(engine)
    return 0 if result.succeeded else 1


async def cmd_export(args: argparse.Namespace) -> int:
    path = Path(args.snapshot)
    engine = await _load_engine(path)
    try:
        if engine.state.final_project is None or args.rebuild:
            engine.build_final_project(
                {
                    "format": args.format,
                    "includeMetadata": not args.no_metadata,
                    "includeAnalysis": args.include_analysis,
                }
            )
        output = await engine.save_manuscript(args.format, args.output_dir)
        await write_snapshot(path, engine)
        console.print(f"Manuscript written to {output}")
    finally:
        await _close_engine(engine)
    return 0


async def cmd_styles(args: argparse.Namespace) -> int:
    """List stored author styles, or show one author's traits and examples."""
    library = build_style_library()
    if args.author:
        style = await library.get(args.author)
        if style is None:
            console.print(f"[yellow]No stored style for {escape(args.author)}[/yellow]")
            return 1
        table = Table(title=f"Style of {style.author_name}")
        table.add_column("Trait")
        table.add_column("Description")
        for trait, description in style.style_analysis.model_dump().items():
            table.add_row(trait.replace("_", " "), description)
        console.print(table)
        for index, example in enumerate(style.text_examples, start=1):
            console.print(f"[bold]Example {index}:[/bold] {escape(example)}")
        return 0

    styles = await library.list_styles()
    if not styles:
        console.print("No author styles stored yet")
        return 0
    table = Table(title="Author styles")
    for column in ("Author", "Tone", "Examples", "Updated"):
        table.add_column(column)
    for style in styles:
        table.add_row(
            style.author_name,
            style.style_analysis.narrative_tone,
            str(len(style.text_examples)),
            style.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)
    return 0

COMMANDS = {
    "new": cmd_new,
    "status": cmd_status,
    "generate": cmd_generate,
    "export": cmd_export,
    "styles": cmd_styles,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storyloom", description="StoryLoom novel workflow")
    parser.add_argument("--log-level", default=None, help="Override STORYLOOM_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    new = sub.add_parser("new", help="Analyse a source text and build a blueprint")
    new.add_argument("source", help="Path to a UTF-8 reference text")
    new.add_argument("snapshot", help="Where to write the project snapshot")
    new.add_argument("--name", default=None)
    new.add_argument("--author", default=None, help="Author of the source text; stores their style")
    new.add_argument("--direction", default=None, help="Guidance for idea generation")
    new.add_argument("--chapters", type=int, default=None, help="Target chapter count")
    new.add_argument("--model-id", default=None, help="Model for every stage")

    status = sub.add_parser("status", help="Show a project's stage and chapters")
    status.add_argument("snapshot")

    generate = sub.add_parser("generate", help="Generate chapters")
    generate.add_argument("snapshot")
    generate.add_argument(
        "--mode",
        choices=[m.value for m in GenerationMode],
        default=GenerationMode.SEQUENTIAL.value,
    )
    generate.add_argument("--chapters", type=int, nargs="+", default=None)
    generate.add_argument("--max-parallel", type=int, default=settings.MAX_PARALLEL_CHAPTERS)
    generate.add_argument("--model-id", default=None)

    export = sub.add_parser("export", help="Export the manuscript")
    export.add_argument("snapshot")
    export.add_argument("--format", choices=["md", "txt"], default="md")
    export.add_argument("--output-dir", default=EXPORTS_DIR)
    export.add_argument("--include-analysis", action="store_true")
    export.add_argument("--no-metadata", action="store_true")
    export.add_argument("--rebuild", action="store_true", help="Rebuild the quality report")

    styles = sub.add_parser("styles", help="List stored author styles")
    styles.add_argument("author", nargs="?", default=None, help="Show one author's style")
    return parser


def run(argv: list[str] | None = None) -> int:
    """Parse ``argv`` and run the chosen command."""
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level)
    try:
        return asyncio.run(COMMANDS[args.command](args))
    except KeyboardInterrupt:
        logger.info("StoryLoom shutting down due to KeyboardInterrupt")
        return 130
    except (StoryLoomError, OSError, ValueError) as e:
        logger.error("Command failed", command=args.command, error=str(e))
        console.print(f"[red]Error:[/red] {e}")
        return 1
