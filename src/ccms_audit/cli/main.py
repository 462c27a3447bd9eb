"""CLI entry point — the `ccms-audit` command."""

from __future__ import annotations

import asyncio
import json
import sys
import time
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ccms_audit.audit.discovery import get_sources, is_cert_name, walk_files
from ccms_audit.audit.report import EXIT_CONFIG_ERROR, EXIT_INTERRUPTED, ReportPaths, exit_code
from ccms_audit.audit.runner import AuditOutcome, run_audit
from ccms_audit.audit.trust import build_trust_set
from ccms_audit.core.backend import format_openssl_date, get_backend
from ccms_audit.core.base import AuditReport, CertStatus
from ccms_audit.core.config import BACKENDS, get_settings
from ccms_audit.core.errors import ConfigurationError, ParseSkip
from ccms_audit.core.log import setup_logging

console = Console()

STATUS_COLORS = {
    CertStatus.NON_CCMS: "red bold",
    CertStatus.EXPIRED: "red",
    CertStatus.UNVERIFIED: "yellow",
}


def _run_async(coro: Any) -> Any:
    """Run an async coroutine from sync Click commands."""
    return asyncio.run(coro)


def _fail(message: str, code: int = EXIT_CONFIG_ERROR) -> None:
    console.print(f"[red]{message}[/red]")
    sys.exit(code)


def _partial_report_written(summary: Path, since: float) -> bool:
    try:
        written = summary.stat().st_mtime >= int(since)
        return written and summary.read_text().startswith("PARTIAL RUN")
    except OSError:
        return False


def _status_markup(label: str) -> str:
    if label == CertStatus.OK:
        return "[green]OK[/green]"
    parts = []
    for flag in label.split("+"):
        style = STATUS_COLORS.get(CertStatus(flag), "")
        parts.append(f"[{style}]{flag}[/{style}]")
    return "+".join(parts)


def _render_report(outcome: AuditOutcome) -> None:
    """Render a finished audit with Rich."""
    report: AuditReport = outcome.report
    counts = report.counts

    console.print(Panel("[bold]CCMS Certificate Compliance Audit[/bold]", style="blue"))

    if report.non_compliant:
        table = Table(title="Non-compliant certificates")
        table.add_column("Path", style="bold")
        table.add_column("Issuer")
        table.add_column("Expires", style="dim")
        table.add_column("Status")
        for record in report.non_compliant:
            table.add_row(
                record.path,
                record.issuer,
                format_openssl_date(record.not_after),
                _status_markup(record.status_label),
            )
        console.print(table)

    if report.anchor_findings:
        table = Table(title="Non-CCMS trust anchors")
        table.add_column("Anchor", style="bold")
        table.add_column("Subject")
        for anchor in report.anchor_findings:
            table.add_row(anchor.path, anchor.subject)
        console.print(table)

    summary = Table(title="Summary", show_header=False)
    summary.add_column("Category", style="bold")
    summary.add_column("Count", justify="right")
    summary.add_row("Total cert files checked", str(counts.total))
    summary.add_row("Non-OK statuses", str(counts.non_ok))
    summary.add_row("  NON_CCMS", str(counts.non_ccms))
    summary.add_row("  EXPIRED", str(counts.expired))
    summary.add_row("  UNVERIFIED chain", str(counts.unverified))
    summary.add_row("Non-CCMS trust anchors", str(counts.non_ccms_anchors))
    console.print(summary)

    console.print(f"[dim]CSV report : {outcome.paths.csv}[/dim]")
    console.print(f"[dim]Findings   : {outcome.paths.findings}[/dim]")
    console.print(f"[dim]CCMS bundle: {outcome.paths.bundle}[/dim]")
    console.print(f"[dim]Allowlist  : {outcome.paths.allowlist}[/dim]")

    if report.compliant:
        console.print(
            "\n[green]All checked certificates appear compliant with CCMS issuers "
            "and chain verification.[/green]"
        )
    else:
        console.print(
            f"\n[red]Non-compliance detected. See {outcome.paths.findings} "
            f"and {outcome.paths.csv}[/red]"
        )


@click.group()
@click.version_option(package_name="ccms-audit")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="TOML config file (default: ~/.config/ccms-audit/config.toml or ./ccms-audit.toml).",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """ccms-audit — certificate compliance auditing against CCMS trusted CAs."""
    setup_logging(verbose)
    ctx.obj = {"config_path": config_path}


@cli.command()
@click.option("--trust-dir", type=click.Path(path_type=Path), help="CCMS CA directory.")
@click.option("--output-dir", "-o", type=click.Path(path_type=Path), help="Report directory.")
@click.option(
    "--scan-path",
    "scan_paths",
    multiple=True,
    type=click.Path(path_type=Path),
    help="Scan root (repeatable). Replaces the default roots.",
)
@click.option(
    "--extra-scan-path",
    "extra_scan_paths",
    multiple=True,
    type=click.Path(path_type=Path),
    help="Additional scan root (repeatable).",
)
@click.option("--max-depth", type=click.IntRange(min=0), help="Directory recursion limit.")
@click.option("--parallelism", "-j", type=click.IntRange(min=1), help="Concurrent checks.")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), help="Per-file timeout.")
@click.option("--backend", type=click.Choice(BACKENDS), help="Certificate backend.")
@click.option("--format", "output_format", type=click.Choice(["rich", "json"]), default="rich")
@click.pass_context
def audit(
    ctx: click.Context,
    trust_dir: Path | None,
    output_dir: Path | None,
    scan_paths: tuple[Path, ...],
    extra_scan_paths: tuple[Path, ...],
    max_depth: int | None,
    parallelism: int | None,
    timeout: float | None,
    backend: str | None,
    output_format: str,
) -> None:
    """Audit certificates on this host. Exits 0 when compliant, 1 on findings, 2 on config errors."""
    try:
        settings = get_settings(
            ctx.obj["config_path"],
            trust_dir=trust_dir,
            output_dir=output_dir,
            scan_paths=list(scan_paths) or None,
            extra_scan_paths=list(extra_scan_paths) or None,
            max_depth=max_depth,
            parallelism=parallelism,
            timeout=timeout,
            backend=backend,
        )
    except ConfigurationError as e:
        _fail(str(e), EXIT_CONFIG_ERROR)
        return

    started = time.time()
    try:
        if output_format == "rich":
            console.print("[yellow]Building certificate inventory…[/yellow]")
        outcome: AuditOutcome = _run_async(run_audit(settings))
    except ConfigurationError as e:
        _fail(str(e), EXIT_CONFIG_ERROR)
        return
    except KeyboardInterrupt:
        summary = ReportPaths.for_dir(settings.output_dir).summary
        if _partial_report_written(summary, started):
            console.print(f"[yellow]Interrupted. Partial report written to {summary}[/yellow]")
        else:
            console.print("[yellow]Interrupted before any report was written.[/yellow]")
        sys.exit(EXIT_INTERRUPTED)

    if output_format == "json":
        data = outcome.report.model_dump(mode="json")
        data["artifacts"] = outcome.paths.model_dump(mode="json")
        click.echo(json.dumps(data, indent=2))
    else:
        _render_report(outcome)

    sys.exit(exit_code(outcome.report))


@cli.command()
@click.argument("paths", nargs=-1, type=click.Path(path_type=Path))
@click.option("--max-depth", type=click.IntRange(min=0), help="Directory recursion limit.")
@click.option("--backend", type=click.Choice(BACKENDS), default="native")
@click.option("--format", "output_format", type=click.Choice(["rich", "json"]), default="rich")
def inventory(
    paths: tuple[Path, ...], max_depth: int | None, backend: str, output_format: str
) -> None:
    """List X.509 certificates under PATHS (default /etc) with issuer and subject."""
    try:
        cert_backend = get_backend(backend)
        cert_backend.check_available()
    except ConfigurationError as e:
        _fail(str(e))
        return

    rows = []
    for root in paths or (Path("/etc"),):
        for path in walk_files(root, max_depth, is_cert_name):
            try:
                cert = cert_backend.parse_certificate(path)
            except ParseSkip:
                continue
            rows.append(
                {
                    "path": path,
                    "issuer": cert.issuer,
                    "subject": cert.subject,
                    "self_signed": cert.self_signed,
                }
            )

    if output_format == "json":
        click.echo(json.dumps(rows, indent=2))
        return

    for row in rows:
        console.print(f"[bold]=== {row['path']} ===[/bold]")
        console.print(f"issuer={row['issuer']}")
        console.print(f"subject={row['subject']}")
        if row["self_signed"]:
            console.print("[yellow]self-signed[/yellow]")
    console.print(f"\n[dim]{len(rows)} certificate file(s)[/dim]")


@cli.command()
@click.option("--trust-dir", type=click.Path(path_type=Path), help="CCMS CA directory.")
@click.pass_context
def trust(ctx: click.Context, trust_dir: Path | None) -> None:
    """Show the CCMS allowlist built from the trust directory."""
    try:
        settings = get_settings(ctx.obj["config_path"], trust_dir=trust_dir)
        backend = get_backend(settings.backend, settings.timeout)
        backend.check_available()
        trust_set = build_trust_set(settings.trust_dir, backend)
    except ConfigurationError as e:
        _fail(str(e))
        return

    console.print(
        Panel(
            f"[bold]{len(trust_set.anchors)}[/bold] trusted certificate(s) from "
            f"{len(trust_set.source_files)} file(s) in {settings.trust_dir}",
            title="[bold]CCMS Trust Set[/bold]",
            style="blue",
        )
    )
    table = Table(title="Allowed issuer names")
    table.add_column("Distinguished name")
    for name in sorted(trust_set.allowed_names):
        table.add_row(name)
    console.print(table)


@cli.command()
@click.pass_context
def sources(ctx: click.Context) -> None:
    """Show discovery sources and whether they exist on this host."""
    try:
        settings = get_settings(ctx.obj["config_path"])
    except ConfigurationError as e:
        _fail(str(e))
        return

    table = Table(title="Discovery Sources")
    table.add_column("Source", style="bold")
    table.add_column("Description")
    table.add_column("Location")
    table.add_column("Present", justify="center")

    for source in get_sources(settings.timeout):
        present = "[green]yes[/green]" if source.is_present(settings) else "[red]no[/red]"
        table.add_row(source.name, source.description, source.location(settings), present)

    table.add_row(
        "trust-anchors",
        "System trust anchors checked against the allowlist",
        str(settings.anchor_dir),
        "[green]yes[/green]" if settings.anchor_dir.is_dir() else "[red]no[/red]",
    )
    console.print(table)
