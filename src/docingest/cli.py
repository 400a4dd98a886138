"""Document Ingestion Pipeline CLI."""

import asyncio
import json
from pathlib import Path
from typing import Any, Optional
from uuid import UUID, uuid4

import typer
from rich.console import Console
from rich.table import Table as RichTable

from docingest.config import settings
from docingest.logging_setup import setup_logging
from docingest.pipeline.stage_extract import BlockGraph, extract_document
from docingest.router import route_event
from docingest.storage import close_db, init_db

app = typer.Typer(
    name="docingest",
    help="Medical document ingestion pipeline: OCR jobs, extraction and chunking",
    add_completion=False,
)
console = Console()


def _load_blocks(path: Path) -> list[dict[str, Any]]:
    """Blocks from a saved result: a bare list or a GetDocumentAnalysis response."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("Blocks", [])
    if not isinstance(data, list):
        raise typer.BadParameter(f"{path} does not contain a block list")
    return data


async def _route_and_close(event: dict[str, Any]) -> dict[str, Any]:
    try:
        return await route_event(event)
    finally:
        await close_db()


def _print_response(response: dict[str, Any]) -> None:
    status = response.get("statusCode")
    style = "green" if status == 200 else "red"
    console.print(f"[bold {style}]HTTP {status}[/bold {style}]")
    console.print_json(response.get("body", "{}"))
    if status != 200:
        raise typer.Exit(code=1)


@app.command("init-db")
def init_db_command() -> None:
    """Create the database schema."""
    setup_logging()

    async def _init() -> None:
        try:
            await init_db()
        finally:
            await close_db()

    asyncio.run(_init())
    console.print("[green]Database initialized[/green]")


@app.command()
def extract(
    blocks_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Saved analysis result (JSON)"),
    document_id: Optional[str] = typer.Option(None, help="Document id to attach results to"),
    show_chunks: bool = typer.Option(False, "--show-chunks", help="Print every chunk"),
) -> None:
    """Run extraction and chunking offline on a saved analysis result."""
    setup_logging()
    doc_id = UUID(document_id) if document_id else uuid4()
    result = extract_document(BlockGraph.from_raw(_load_blocks(blocks_path)), doc_id)

    console.print(f"[bold blue]Document:[/bold blue] {doc_id}")
    summary = RichTable(show_header=False)
    summary.add_row("Pages", str(result.total_pages))
    summary.add_row("Characters", str(len(result.full_text)))
    summary.add_row("Chunks", str(len(result.chunks)))
    summary.add_row("Form fields", str(len(result.form_fields)))
    summary.add_row("Entities", str(len(result.entities)))
    summary.add_row("Tables", str(len(result.tables)))
    summary.add_row("Signatures", str(len(result.signatures)))
    summary.add_row("Avg confidence", f"{result.average_confidence:.2f}")
    console.print(summary)

    if result.form_fields:
        fields = RichTable("Key", "Value", title="Form fields")
        for key, value in result.form_fields.items():
            fields.add_row(key, value)
        console.print(fields)

    if show_chunks:
        for chunk in result.chunks:
            console.print(
                f"[dim]page {chunk.page_number} #{chunk.index} "
                f"({chunk.char_count} chars, {chunk.word_count} words)[/dim]"
            )
            console.print(chunk.content)


@app.command()
def submit(
    key: str = typer.Argument(..., help="Object key, e.g. <user-id>/<file name>"),
    bucket: str = typer.Option(None, help="Bucket name (defaults to the ingestion bucket)"),
) -> None:
    """Replay an upload event for an object already in the bucket."""
    setup_logging()
    event = {
        "Records": [
            {
                "eventSource": "aws:s3",
                "eventName": "ObjectCreated:Put",
                "s3": {
                    "bucket": {"name": bucket or settings.ingestion_bucket},
                    "object": {"key": key},
                },
            }
        ]
    }
    _print_response(asyncio.run(_route_and_close(event)))


@app.command()
def complete(
    job_id: str = typer.Argument(..., help="Analysis job id"),
    status: str = typer.Option("SUCCEEDED", help="Job status to report"),
    message: Optional[str] = typer.Option(None, help="Status message for failed jobs"),
) -> None:
    """Replay a job completion notification."""
    setup_logging()
    payload = {"JobId": job_id, "Status": status.upper()}
    if message:
        payload["StatusMessage"] = message
    event = {
        "Records": [
            {
                "EventSource": "aws:sns",
                "Sns": {"Message": json.dumps(payload), "TopicArn": settings.textract_sns_topic_arn},
            }
        ]
    }
    _print_response(asyncio.run(_route_and_close(event)))


if __name__ == "__main__":
    app()
