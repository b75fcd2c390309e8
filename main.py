#!/usr/bin/env python3
"""Pain-Point Pipeline - CLI Entry Point.

Enrich forum posts, link similar ones, cluster the pain points and turn the
clusters into product ideas.
"""

import json
import logging
import sys
import time
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from painpoint import __version__
from painpoint.config import get_config
from painpoint.database import Database, Job, Post, get_database
from painpoint.errors import PipelineError
from painpoint.jobs import find_job, list_recent_jobs, progress_from_dict
from painpoint.stages import STAGES, Pipeline


console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "running": "cyan",
    "completed": "green",
    "failed": "red",
}


def format_timestamp(ts: float | None) -> str:
    """Convert Unix timestamp to readable date."""
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%b %d %H:%M:%S")


def open_database() -> Database:
    db = get_database()
    db.initialize()
    return db


def print_job(job: Job) -> None:
    """Render a job as a panel."""
    style = STATUS_STYLES.get(job.status, "white")
    lines = [
        f"[bold]Stage:[/bold] {job.stage}",
        f"[bold]Status:[/bold] [{style}]{job.status}[/{style}]",
        f"[bold]Created:[/bold] {format_timestamp(job.created_at)}",
        f"[bold]Started:[/bold] {format_timestamp(job.started_at)}",
        f"[bold]Completed:[/bold] {format_timestamp(job.completed_at)}",
    ]
    if job.duration_seconds is not None:
        lines.append(f"[bold]Duration:[/bold] {job.duration_seconds:.1f}s")
    if job.parameters:
        lines.append(f"[bold]Parameters:[/bold] {json.dumps(job.parameters)}")
    progress = progress_from_dict(job.progress)
    if progress is not None:
        lines.append(f"[bold]Progress:[/bold] {progress.summary()}")
    if job.result:
        result = {k: v for k, v in job.result.items() if k not in ("clusters", "top_ideas", "generate")}
        lines.append(f"[bold]Result:[/bold] {json.dumps(result)}")
    if job.error:
        lines.append(f"[bold red]Error:[/bold red] {job.error}")

    console.print(Panel("\n".join(lines), title=job.id, border_style=style))


def run_stage(stage: str, parameters: dict) -> Job:
    """Run one stage in the foreground and print the outcome."""
    try:
        pipeline = Pipeline(get_config(), open_database())
        with console.status(f"[bold]Running {stage}...[/bold]"):
            job = pipeline.run(stage, parameters)
    except PipelineError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    print_job(job)
    return job


def exit_on_failure(job: Job) -> None:
    if job.status == "failed":
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="painpoint")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
def cli(verbose: bool):
    """Pain-Point Pipeline - turn forum complaints into product ideas."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="%H:%M:%S",
        handlers=[RichHandler(console=console, show_path=False)],
    )


@cli.command()
def init():
    """Initialize the pipeline (create database)."""
    console.print("[bold]Initializing Pain-Point Pipeline...[/bold]\n")

    try:
        config = get_config()
        db = open_database()
    except PipelineError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    console.print(f"[green]✓[/green] Initialized database: {db.db_path}")

    if config.credentials.has_ai_key():
        console.print(f"[green]✓[/green] AI credentials configured ({config.ai.classify_model})")
    else:
        console.print("[yellow]![/yellow] OPENAI_API_KEY not set: heuristic classification only, no embeddings")

    if config.credentials.trigger_api_key:
        console.print("[green]✓[/green] Trigger endpoint protected by PAINPOINT_API_KEY")

    console.print("\n[bold]Next:[/bold] [cyan]painpoint add-posts posts.json[/cyan], then [cyan]painpoint pipeline[/cyan]")


@cli.command("add-posts")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--platform", "-p", default="", help="Platform name stored on posts lacking one")
def add_posts(path: str, platform: str):
    """Import posts from a JSON file (a list of objects with id, title, body)."""
    try:
        data = json.loads(Path(path).read_text())
    except json.JSONDecodeError as e:
        console.print(f"[red]Error:[/red] {path} is not valid JSON: {e}")
        sys.exit(1)

    if not isinstance(data, list):
        console.print("[red]Error:[/red] Expected a JSON list of posts")
        sys.exit(1)

    posts = []
    skipped = 0
    for item in data:
        if not isinstance(item, dict) or not item.get("id") or not item.get("title"):
            skipped += 1
            continue
        posts.append(Post(
            id=str(item["id"]),
            title=str(item["title"]),
            body=item.get("body"),
            platform=item.get("platform") or platform,
            url=item.get("url") or "",
            created_at=float(item.get("created_at") or time.time()),
        ))

    db = open_database()
    inserted = db.insert_posts(posts) if posts else 0

    console.print(f"[green]Imported {inserted} new posts[/green] ({len(posts) - inserted} already present)")
    if skipped:
        console.print(f"[yellow]Skipped {skipped} entries without id or title[/yellow]")


@cli.command()
@click.option("--batch-size", "-b", type=int, default=None, help="Posts per batch")
@click.option("--concurrency", "-c", type=int, default=None, help="Posts enriched in parallel")
@click.option("--max-posts", "-m", type=int, default=None, help="Stop after this many posts")
@click.option("--time-budget", "-t", type=float, default=None, help="Wall-clock budget in minutes")
@click.option("--retry-failed", is_flag=True, help="Re-queue posts whose enrichment failed")
def enrich(batch_size, concurrency, max_posts, time_budget, retry_failed):
    """Enrich unprocessed posts with sentiment, keywords and embeddings."""
    if retry_failed:
        reset = open_database().reset_failed_enrichment()
        console.print(f"[dim]Re-queued {reset} failed posts[/dim]")

    parameters = {
        key: value for key, value in {
            "batch_size": batch_size,
            "concurrency": concurrency,
            "max_posts": max_posts,
            "time_budget_minutes": time_budget,
        }.items() if value is not None
    }
    exit_on_failure(run_stage("enrich", parameters))


@cli.command()
@click.option("--limit", "-l", type=int, default=None, help="Maximum posts to process")
def similarity(limit):
    """Compute similarity lists for enriched posts."""
    parameters = {"batch_limit": limit} if limit else {}
    exit_on_failure(run_stage("similarity", parameters))


@cli.command()
@click.option("--threshold", type=float, default=None, help="Minimum cosine similarity")
@click.option("--min-size", type=int, default=None, help="Smallest cluster kept")
@click.option("--max-clusters", type=int, default=None, help="Maximum clusters kept")
@click.option("--days", "-d", type=float, default=None, help="Only posts from the last N days")
@click.option("--skip-screening", is_flag=True, help="Cluster all posts, not just opportunities")
@click.option("--no-generate", is_flag=True, help="Stop after storing clusters")
def cluster(threshold, min_size, max_clusters, days, skip_screening, no_generate):
    """Cluster recent opportunity posts and generate ideas from them."""
    parameters = {
        key: value for key, value in {
            "threshold": threshold,
            "min_size": min_size,
            "max_clusters": max_clusters,
            "days": days,
        }.items() if value is not None
    }
    if skip_screening:
        parameters["skip_screening"] = True
    if no_generate:
        parameters["generate"] = False

    job = run_stage("cluster", parameters)
    if job.status == "completed" and job.result and job.result.get("clusters"):
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Cluster", style="cyan")
        table.add_column("Size", justify="right")
        table.add_column("Theme")
        for c in job.result["clusters"]:
            table.add_row(c["id"], str(c["size"]), c["theme_summary"])
        console.print(table)
    exit_on_failure(job)


@cli.command()
@click.option("--from-job", "cluster_job_id", required=True, help="Cluster job whose clusters to use")
@click.option("--min-score", type=int, default=None, help="Drop ideas scoring below this")
def generate(cluster_job_id: str, min_score):
    """Generate ideas from the stored clusters of a cluster job."""
    parameters = {"cluster_job_id": cluster_job_id}
    if min_score is not None:
        parameters["min_score"] = min_score
    exit_on_failure(run_stage("generate", parameters))


@cli.command()
@click.option("--no-generate", is_flag=True, help="Stop after clustering")
def pipeline(no_generate: bool):
    """Run enrich, similarity and cluster in sequence."""
    try:
        runner = Pipeline(get_config(), open_database())
    except PipelineError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    steps = [
        ("enrich", {}),
        ("similarity", {}),
        ("cluster", {"generate": False} if no_generate else {}),
    ]
    for stage, parameters in steps:
        console.print(f"\n[bold cyan]▶ {stage}[/bold cyan]")
        with console.status(f"[bold]Running {stage}...[/bold]"):
            job = runner.run(stage, parameters)
        print_job(job)
        if job.status == "failed":
            console.print(f"[red]Pipeline stopped at {stage}[/red]")
            sys.exit(1)

    console.print("\n[green]Pipeline complete[/green]")


@cli.command()
@click.argument("job_id")
def status(job_id: str):
    """Show the status of a job."""
    db = open_database()
    try:
        job = find_job(db, job_id)
    except PipelineError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    print_job(job)


@cli.command()
@click.option("--stage", "-s", type=click.Choice(STAGES), default=None, help="Only this stage")
@click.option("--limit", "-l", default=20, help="Number of jobs to show")
def jobs(stage: str | None, limit: int):
    """List recent jobs."""
    db = open_database()
    recent = list_recent_jobs(db, limit=limit, stage=stage)

    if not recent:
        console.print("[yellow]No jobs found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Job ID", style="cyan")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Created")
    table.add_column("Duration", justify="right")

    for job in recent:
        style = STATUS_STYLES.get(job.status, "white")
        duration = f"{job.duration_seconds:.1f}s" if job.duration_seconds is not None else "-"
        table.add_row(
            job.id,
            job.stage,
            f"[{style}]{job.status}[/{style}]",
            format_timestamp(job.created_at),
            duration,
        )

    console.print(table)


@cli.command()
@click.option("--job", "-j", "job_id", default=None, help="Only ideas from this generate job")
@click.option("--limit", "-l", default=20, help="Number of ideas to show")
def ideas(job_id: str | None, limit: int):
    """Show generated ideas."""
    db = open_database()
    found = db.get_ideas(job_id, limit=limit)

    if not found:
        console.print("[yellow]No ideas found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score", justify="right", style="green")
    table.add_column("Name", style="cyan")
    table.add_column("One-liner")
    table.add_column("Cluster", style="dim")

    for idea in found:
        table.add_row(str(idea.score), idea.name, idea.one_liner, idea.cluster_id)

    console.print(table)


@cli.command()
def stats():
    """Show database statistics."""
    db = open_database()
    stats = db.get_stats()

    console.print("\n[bold]Database Statistics[/bold]\n")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Table", style="cyan")
    table.add_column("Records", justify="right")

    breakdown = stats.pop("enrich_status", {})
    for table_name, count in stats.items():
        table.add_row(table_name, str(count))
    for status_name, count in sorted(breakdown.items()):
        table.add_row(f"posts ({status_name})", str(count))

    console.print(table)


@cli.command()
@click.option("--days", "-d", default=30, type=int, help="Delete finished jobs older than N days")
def archive(days: int):
    """Delete old finished jobs and stale cluster results."""
    config = get_config()
    db = open_database()

    jobs_deleted = db.archive_jobs(days)
    results_deleted = db.cleanup_cluster_results(config.cluster.results_ttl_hours)
    if jobs_deleted or results_deleted:
        db.vacuum()

    console.print(f"[green]Archived {jobs_deleted} jobs and {results_deleted} cluster results[/green]")


@cli.command()
@click.option("--host", "-h", default=None, help="Host to bind to")
@click.option("--port", "-p", default=None, type=int, help="Port to listen on")
@click.option("--reload", "-r", is_flag=True, help="Enable auto-reload for development")
def serve(host: str | None, port: int | None, reload: bool):
    """Launch the trigger and status API."""
    from painpoint.api.web import run_server

    config = get_config()
    host = host or config.ui.host
    port = port or config.ui.port

    console.print(f"\n[bold]Starting Pain-Point Pipeline API[/bold]\n")
    console.print(f"  URL: [cyan]http://{host}:{port}[/cyan]")
    console.print(f"  Reload: {'enabled' if reload else 'disabled'}")
    console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")

    run_server(host=host, port=port, reload=reload)


if __name__ == "__main__":
    cli()
