"""
CLI for ComplyFlow.

Commands:
    process           - Run a certificate through tiered extraction
    analyze-patterns  - Turn recent corrections into suggestions
    train             - Train a risk model from prediction feedback
    predict           - Score a property from a JSON profile
    sweep             - Fail runs stuck in processing
    rules-check       - Validate a rule file
"""

import asyncio
import json
import logging
import mimetypes
from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF
import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table as RichTable

from ..errors import ComplyError, RateLimitExceeded
from ..rules import RuleSet
from ..schemas import DocumentInput, Hyperparameters, PropertyProfile
from ..services import ComplyServices

app = typer.Typer(
    name="complyflow",
    help="ComplyFlow - compliance certificate extraction and risk prediction",
)
console = Console()

STATUS_STYLE = {
    "APPROVED": "green",
    "VALIDATION_FAILED": "red",
    "AWAITING_REVIEW": "yellow",
    "REJECTED": "red",
    "FAILED": "red",
}


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _fail(message: str) -> None:
    rprint(f"[red]{message}[/red]")
    raise typer.Exit(1)


def _page_count(path: Path, content: bytes) -> int:
    if path.suffix.lower() != ".pdf":
        return 1
    with fitz.open(stream=content, filetype="pdf") as doc:
        return doc.page_count


@app.command()
def process(
    file_path: Path = typer.Argument(..., help="Certificate PDF or image"),
    cert_type: str = typer.Option(..., "--type", "-t", help="Certificate type, e.g. GAS_SAFETY, EICR, FRA"),
    org_id: str = typer.Option(..., "--org", "-o", help="Organization ID"),
    certificate_id: Optional[str] = typer.Option(None, "--certificate-id", "-c", help="Defaults to the file name"),
):
    """
    Run a certificate through the extraction tiers.

    Examples:
        complyflow process cp12.pdf --type GAS_SAFETY --org ORG_001
    """
    if not file_path.exists():
        _fail(f"File not found: {file_path}")

    content = file_path.read_bytes()
    mime_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
    document = DocumentInput(
        content=content,
        mime_type=mime_type,
        certificate_type=cert_type,
        filename=file_path.name,
        page_count=_page_count(file_path, content),
    )
    services = ComplyServices.create()

    async def _run():
        await services.startup()
        try:
            return await services.orchestrator.process(org_id, certificate_id or file_path.stem, document)
        finally:
            await services.shutdown()

    try:
        run = asyncio.run(_run())
    except ComplyError as e:
        _fail(str(e))

    style = STATUS_STYLE.get(run.status.value, "white")
    rprint(f"\n[{style}]{run.status.value}[/{style}] {run.run_id}")
    rprint(f"  Confidence: {run.confidence:.2f}  Tier: {run.final_tier}  Cost: ${run.total_cost:.4f}")
    if run.outcome:
        rprint(f"  Outcome: {run.outcome}")
    if run.failed_rules:
        rprint(f"  Failed rules: {', '.join(run.failed_rules)}")

    table = RichTable(title="Tier attempts")
    table.add_column("#", justify="right")
    table.add_column("Tier", justify="right")
    table.add_column("Adapter", style="cyan")
    table.add_column("OK")
    table.add_column("Confidence", justify="right")
    table.add_column("Error")
    for attempt in services.store.list_tier_attempts(org_id, run.run_id):
        table.add_row(
            str(attempt.sequence),
            str(attempt.tier),
            attempt.adapter,
            "yes" if attempt.succeeded else "no",
            f"{attempt.confidence:.2f}",
            attempt.error or "",
        )
    console.print(table)

    if run.fields:
        rprint("\n[bold]Fields[/bold]")
        rprint(json.dumps(run.fields, indent=2, default=str))


@app.command("analyze-patterns")
def analyze_patterns(
    org_id: str = typer.Option(..., "--org", "-o", help="Organization ID"),
    caller_id: str = typer.Option("cli", "--caller", help="Caller identity for rate limiting"),
):
    """Analyze recent corrections and upsert improvement suggestions."""
    services = ComplyServices.create()
    try:
        result = services.trigger_pattern_analysis(caller_id, org_id)
    except RateLimitExceeded as e:
        _fail(f"Rate limited, retry in {e.retry_after_seconds}s")

    rprint(
        f"[green]Analyzed {result.analyzed_corrections} correction(s), "
        f"{result.analyzed_reviews} review(s)[/green]"
    )
    table = RichTable(title="Suggestions")
    table.add_column("Key", style="cyan")
    table.add_column("Status")
    table.add_column("Severity")
    table.add_column("Seen", justify="right")
    table.add_column("Progress", justify="right")
    for suggestion in services.patterns.list_suggestions(org_id):
        table.add_row(
            suggestion.suggestion_key,
            suggestion.status.value,
            suggestion.severity.value,
            str(suggestion.occurrences),
            f"{suggestion.progress_percent:.0f}%",
        )
    console.print(table)


@app.command()
def train(
    org_id: str = typer.Option(..., "--org", "-o", help="Organization ID"),
    epochs: int = typer.Option(100, "--epochs", help="Training epochs"),
    learning_rate: float = typer.Option(0.01, "--learning-rate", help="Initial learning rate"),
    auto_promote: bool = typer.Option(False, "--auto-promote", help="Promote when the benchmark passes"),
    caller_id: str = typer.Option("cli", "--caller", help="Caller identity for rate limiting"),
):
    """Train a risk model from accumulated prediction feedback."""
    services = ComplyServices.create()
    hp = Hyperparameters(epochs=epochs, learning_rate=learning_rate)
    try:
        result = services.trigger_training(caller_id, org_id, hp, auto_promote=auto_promote)
    except ComplyError as e:
        _fail(str(e))

    style = "green" if result.passed else "yellow"
    rprint(f"\n[{style}]Benchmark {result.benchmark_score:.1f} - {'passed' if result.passed else 'not passed'}[/{style}]")
    rprint(f"  Model: {result.model_version or '-'}")
    rprint(f"  Samples: {result.sample_count}")
    rprint(f"  Promoted: {'yes' if result.promoted else 'no'}")
    if result.error:
        rprint(f"  [red]Error: {result.error}[/red]")


@app.command()
def predict(
    property_json: Path = typer.Argument(..., help="Property profile JSON file"),
    org_id: Optional[str] = typer.Option(None, "--org", "-o", help="Overrides org_id in the file"),
):
    """Score a property's compliance risk."""
    if not property_json.exists():
        _fail(f"File not found: {property_json}")

    data = json.loads(property_json.read_text())
    if org_id:
        data["org_id"] = org_id
    profile = PropertyProfile.model_validate(data)

    services = ComplyServices.create()
    services.store.save_property(profile)
    try:
        prediction = services.ensemble.predict(profile.org_id, profile.property_id)
    except ComplyError as e:
        _fail(str(e))

    rprint(f"\n[bold]{profile.property_id}[/bold]: {prediction.blended_score:.1f} ({prediction.risk_tier.value})")
    rprint(f"  Statistical: {prediction.statistical_score:.0f} @ {prediction.statistical_confidence:.2f}")
    if prediction.ml_score is not None:
        rprint(f"  Model {prediction.model_version}: {prediction.ml_score:.1f} @ {prediction.ml_confidence:.2f}")
    if prediction.predicted_breach_date:
        rprint(f"  Predicted breach: {prediction.predicted_breach_date.isoformat()}")

    table = RichTable(title="Factors")
    table.add_column("Factor", style="cyan")
    table.add_column("Score", justify="right")
    for name, score in prediction.factors.as_dict().items():
        table.add_row(name, str(score))
    console.print(table)

    for action in prediction.recommended_actions:
        rprint(f"  - {action}")


@app.command()
def sweep(
    org_id: str = typer.Option(..., "--org", "-o", help="Organization ID"),
):
    """Mark runs stuck in processing as FAILED."""
    services = ComplyServices.create()
    failed = services.orchestrator.sweep_stuck_runs(org_id)
    if not failed:
        rprint("[green]No stuck runs[/green]")
        return
    rprint(f"[yellow]Marked {len(failed)} run(s) FAILED[/yellow]")
    for run_id in failed:
        rprint(f"  {run_id}")


@app.command("rules-check")
def rules_check(
    rules_path: Path = typer.Argument(..., help="Rule file to validate"),
):
    """Validate a rule file against the certificate schemas."""
    try:
        rule_set = RuleSet.load(rules_path)
    except ComplyError as e:
        _fail(str(e))

    table = RichTable(title=str(rules_path))
    table.add_column("Rule", style="cyan")
    table.add_column("Kind")
    table.add_column("Types")
    table.add_column("Priority", justify="right")
    for rule in rule_set.validation_rules:
        table.add_row(rule.id, "validation", ",".join(rule.certificate_types), str(rule.priority))
    for rule in rule_set.outcome_rules:
        table.add_row(rule.id, f"outcome:{rule.outcome.value}", ",".join(rule.certificate_types), str(rule.priority))
    console.print(table)
    rprint("[green]Rule file is valid[/green]")


if __name__ == "__main__":
    app()
