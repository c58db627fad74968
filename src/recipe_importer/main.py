# main.py
#
# Description:
# Command line entry point. Builds the service objects once and exposes the
# submission surface: import, status, list, cancel, retry and sweep.

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

import typer

from . import config
from .errors import ImportConflictError, ImportNotFoundError, InvalidImportUrlError
from .gemini_client import GeminiService
from .importer import RecipeImporter
from .instagram_fetcher import InstagramScraper
from .media_downloader import sweep_stale_media
from .models import ImportRecord, ImportStatus
from .orchestrator import ImportOrchestrator
from .stores import ImportStore, RecipeStore
from .utils import setup_logging

app = typer.Typer(
    name="recipe-importer",
    help="Import recipes from Instagram posts with Google Gemini.",
    add_completion=False,
)

POLL_INTERVAL_SECONDS = 0.5


@dataclass
class Services:
    import_store: ImportStore
    recipe_store: RecipeStore
    scraper: InstagramScraper
    gemini: GeminiService
    orchestrator: ImportOrchestrator
    importer: RecipeImporter


def build_services(sweep: bool = True) -> Services:
    """Creates the stores, clients and importer shared by one process."""
    if sweep:
        sweep_stale_media()

    import_store = ImportStore(config.IMPORTS_JSON_PATH)
    recipe_store = RecipeStore(config.RECIPES_JSON_PATH)
    scraper = InstagramScraper()
    gemini = GeminiService()
    orchestrator = ImportOrchestrator(import_store, recipe_store, scraper, gemini)
    return Services(
        import_store=import_store,
        recipe_store=recipe_store,
        scraper=scraper,
        gemini=gemini,
        orchestrator=orchestrator,
        importer=RecipeImporter(orchestrator),
    )


def format_record(record: ImportRecord) -> str:
    line = f"{record.id}  {record.status.value:<18} {record.progress:>3}%  {record.input_url}"
    if record.recipe_id:
        line += f"  recipe={record.recipe_id}"
    if record.error:
        line += f"  error={record.error}"
    return line


async def follow_import(importer: RecipeImporter, record: ImportRecord) -> ImportRecord:
    """Prints progress changes until the import reaches a terminal status."""
    typer.echo(format_record(record))
    last = (record.status, record.progress)
    while not record.status.is_terminal:
        await asyncio.sleep(POLL_INTERVAL_SECONDS)
        record = importer.get_import(record.id)
        if (record.status, record.progress) != last:
            typer.echo(format_record(record))
            last = (record.status, record.progress)
    await importer.wait_for(record.id)
    return importer.get_import(record.id)


def _finish(record: ImportRecord):
    if record.status == ImportStatus.READY:
        typer.echo(f"✅ Recipe {record.recipe_id} created")
        return
    typer.echo(f"❌ Import failed: {record.error}", err=True)
    raise typer.Exit(code=1)


def _abort(error: Exception):
    typer.echo(f"Error: {error}", err=True)
    raise typer.Exit(code=1)


@app.callback()
def main():
    setup_logging()


@app.command("import")
def import_post(url: str = typer.Argument(..., help="Instagram post or reel URL")):
    """Import a recipe from an Instagram post and follow its progress."""
    services = build_services()

    async def run() -> ImportRecord:
        record = await services.importer.submit_import(url)
        return await follow_import(services.importer, record)

    try:
        record = asyncio.run(run())
    except (InvalidImportUrlError, ImportConflictError) as e:
        _abort(e)
    _finish(record)


@app.command()
def status(import_id: str = typer.Argument(..., help="Import id")):
    """Show the full record of an import."""
    services = build_services(sweep=False)
    try:
        record = services.importer.get_import(import_id)
    except ImportNotFoundError as e:
        _abort(e)
    typer.echo(record.model_dump_json(indent=2))


@app.command("list")
def list_imports(
    status: Optional[List[ImportStatus]] = typer.Option(None, "--status", "-s", help="Only show these statuses"),
    active: bool = typer.Option(False, "--active", help="Only show imports that are still in flight"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Maximum number of imports"),
):
    """List imports, newest first."""
    services = build_services(sweep=False)
    records = services.importer.list_imports(status=status or None, active=active, limit=limit)
    if not records:
        typer.echo("No imports found.")
        return
    for record in records:
        typer.echo(format_record(record))


@app.command()
def cancel(
    import_id: str = typer.Argument(..., help="Import id"),
    permanent: bool = typer.Option(False, "--permanent", help="Delete the import record instead"),
):
    """Cancel an in-flight import, or delete it with --permanent."""
    services = build_services(sweep=False)
    try:
        record = services.importer.cancel_import(import_id, permanent=permanent)
    except (ImportNotFoundError, ImportConflictError) as e:
        _abort(e)
    if record is None:
        typer.echo(f"Deleted import {import_id}")
    else:
        typer.echo(format_record(record))


@app.command()
def retry(import_id: str = typer.Argument(..., help="Id of a failed import")):
    """Start a new import for the URL of a failed import."""
    services = build_services()

    async def run() -> ImportRecord:
        record = await services.importer.retry_import(import_id)
        return await follow_import(services.importer, record)

    try:
        record = asyncio.run(run())
    except (ImportNotFoundError, ImportConflictError, InvalidImportUrlError) as e:
        _abort(e)
    _finish(record)


@app.command()
def sweep(
    max_age: Optional[int] = typer.Option(None, "--max-age", help="Age in seconds; defaults to the configured value"),
):
    """Remove media files left behind by interrupted imports."""
    removed = sweep_stale_media(max_age_seconds=max_age)
    logging.info(f"Sweep finished, {removed} file(s) removed")
    typer.echo(f"Removed {removed} stale media file(s)")


if __name__ == "__main__":
    app()
