"""Command line entry point for the reconciliation toolkit."""

import csv
import logging
from pathlib import Path
from typing import List, Optional

import duckdb
import typer

from arithmetic import check_arithmetic
from exporter import Exporter
from logging_config import setup_logging
from models import MatchMode, ReconConfig, ReconResult, Side, PROXIMITY_TOLERANCE
from recon_engine import LEFT_TABLE, ReconEngine
from review import identify_review_cases

logger = logging.getLogger(__name__)

app = typer.Typer(name="recon", help="Reconcile act reports against insurance exports.")

MANIFEST_COLUMNS = ("left", "right", "output")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines."),
) -> None:
    setup_logging(log_level, json_format=json_logs)


def _echo_summary(result: ReconResult) -> None:
    summary = result.summary
    typer.echo(f"Total matches: {summary.total_matched}")
    typer.echo(f"Total unmatched: {summary.total_unmatched}")
    typer.echo(f"  left: {len(result.unmatched.left)}")
    typer.echo(f"  right: {len(result.unmatched.right)}")
    typer.echo(f"Duplicate groups: {len(result.duplicates)}")
    typer.echo(f"Match percentage: {summary.match_percentage:.2f}%")


def _arithmetic_columns(base: Optional[str], commission: Optional[str], net: Optional[str]):
    columns = [base, commission, net]
    if not any(columns):
        return None
    if not all(columns):
        raise typer.BadParameter(
            "--base-col, --commission-col and --net-col must be given together"
        )
    return columns


@app.command("reconcile")
def reconcile_cmd(
    left: Path = typer.Argument(..., exists=True, dir_okay=False, help="Act report file."),
    right: Path = typer.Argument(..., exists=True, dir_okay=False, help="Insurance export file."),
    amount_left: Optional[str] = typer.Option(
        None, "--amount-left", help="Amount column in LEFT, detected from headers if omitted."
    ),
    amount_right: Optional[str] = typer.Option(
        None, "--amount-right", help="Amount column in RIGHT, detected from headers if omitted."
    ),
    key_left: Optional[str] = typer.Option(None, "--key-left", help="Key column in LEFT."),
    key_right: Optional[str] = typer.Option(None, "--key-right", help="Key column in RIGHT."),
    mode: MatchMode = typer.Option(MatchMode.KEY, "--mode", case_sensitive=False),
    tolerance: float = typer.Option(
        PROXIMITY_TOLERANCE, "--tolerance", help="Amount tolerance for proximity mode."
    ),
    output: Optional[Path] = typer.Option(None, "--output", help="Workbook to write."),
    csv_dir: Optional[Path] = typer.Option(None, "--csv-dir", help="Directory for CSV tables."),
    base_col: Optional[str] = typer.Option(None, "--base-col"),
    commission_col: Optional[str] = typer.Option(None, "--commission-col"),
    net_col: Optional[str] = typer.Option(None, "--net-col"),
) -> None:
    """Reconcile LEFT against RIGHT and print a summary."""
    arithmetic_cols = _arithmetic_columns(base_col, commission_col, net_col)

    engine = ReconEngine()
    try:
        config = ReconConfig(
            key_col_left=key_left,
            key_col_right=key_right,
            amount_col_left=amount_left,
            amount_col_right=amount_right,
            mode=mode,
            amount_tolerance=tolerance,
        )
        result = engine.reconcile_files(str(left), str(right), config)
        issues = []
        if arithmetic_cols:
            issues = engine.check_arithmetic(LEFT_TABLE, *arithmetic_cols)
    except (ValueError, duckdb.Error) as exc:
        logger.error("Reconciliation failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    finally:
        engine.close()

    if not (amount_left and amount_right):
        typer.echo(
            f"Amount columns: {result.config.amount_col_left} / {result.config.amount_col_right}"
        )
    _echo_summary(result)
    if arithmetic_cols:
        typer.echo(f"Arithmetic issues: {len(issues)}")

    review_cases = identify_review_cases(result, issues)
    for case in review_cases:
        typer.echo(f"Review [{case.priority}]: {case.description}")

    exporter = Exporter()
    if output:
        exporter.export_workbook(
            result, str(output), arithmetic_issues=issues, review_cases=review_cases
        )
        typer.echo(f"Workbook written to {output}")
    if csv_dir:
        exported = exporter.export_csv(result, str(csv_dir), arithmetic_issues=issues)
        typer.echo(f"{len(exported)} CSV files written to {csv_dir}")


@app.command("check-arithmetic")
def check_arithmetic_cmd(
    path: Path = typer.Argument(..., exists=True, dir_okay=False),
    base_col: str = typer.Option(..., "--base-col"),
    commission_col: str = typer.Option(..., "--commission-col"),
    net_col: str = typer.Option(..., "--net-col"),
    annotated: Optional[Path] = typer.Option(
        None, "--annotated", help="Write the rows with highlighted issues."
    ),
) -> None:
    """Check commission and net amounts; exit code 1 when issues exist."""
    engine = ReconEngine()
    try:
        engine.load_file(str(path), LEFT_TABLE)
        records = engine.fetch_records(LEFT_TABLE, Side.LEFT)
        issues = check_arithmetic(records, base_col, commission_col, net_col)
    except (ValueError, duckdb.Error) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    finally:
        engine.close()

    for issue in issues:
        typer.echo(f"{issue.record.id}: {issue.reason}")
    typer.echo(f"{len(issues)} issues in {len(records)} rows")

    if annotated:
        reasons = {}
        for issue in issues:
            previous = reasons.get(issue.record.id)
            reasons[issue.record.id] = f"{previous}; {issue.reason}" if previous else issue.reason
        Exporter().export_annotated(records, reasons, str(annotated))
        typer.echo(f"Annotated rows written to {annotated}")

    if issues:
        raise typer.Exit(code=1)


def _read_manifest(path: Path) -> List[dict]:
    with path.open(newline="", encoding="utf-8") as fh:
        reader = csv.DictReader(fh)
        missing = [c for c in MANIFEST_COLUMNS if c not in (reader.fieldnames or [])]
        if missing:
            raise typer.BadParameter(f"Manifest is missing columns: {', '.join(missing)}")
        return list(reader)


@app.command("bulk")
def bulk_cmd(
    manifest: Path = typer.Argument(
        ..., exists=True, dir_okay=False, help="CSV with left,right,output columns."
    ),
    amount_left: Optional[str] = typer.Option(None, "--amount-left"),
    amount_right: Optional[str] = typer.Option(None, "--amount-right"),
    key_left: Optional[str] = typer.Option(None, "--key-left"),
    key_right: Optional[str] = typer.Option(None, "--key-right"),
    mode: MatchMode = typer.Option(MatchMode.KEY, "--mode", case_sensitive=False),
    tolerance: float = typer.Option(PROXIMITY_TOLERANCE, "--tolerance"),
) -> None:
    """Reconcile every file pair listed in MANIFEST, one after another."""
    try:
        config = ReconConfig(
            key_col_left=key_left,
            key_col_right=key_right,
            amount_col_left=amount_left,
            amount_col_right=amount_right,
            mode=mode,
            amount_tolerance=tolerance,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    base_dir = manifest.parent
    pairs = _read_manifest(manifest)
    failures = 0
    exporter = Exporter()

    for number, pair in enumerate(pairs, start=1):
        left = base_dir / pair["left"]
        right = base_dir / pair["right"]
        output = base_dir / pair["output"]
        typer.echo(f"[{number}/{len(pairs)}] {left.name} <-> {right.name}")

        engine = ReconEngine()
        try:
            result = engine.reconcile_files(str(left), str(right), config)
        except (ValueError, duckdb.Error) as exc:
            failures += 1
            logger.error("Pair %d failed: %s", number, exc)
            typer.echo(f"  failed: {exc}")
            continue
        finally:
            engine.close()

        exporter.export_workbook(result, str(output), review_cases=identify_review_cases(result))
        typer.echo(
            f"  {result.summary.total_matched} matched, "
            f"{result.summary.total_unmatched} unmatched, "
            f"{result.summary.match_percentage:.2f}% -> {output}"
        )

    typer.echo(f"Processed {len(pairs) - failures} of {len(pairs)} pairs")
    if failures:
        raise typer.Exit(code=1)


@app.command("serve")
def serve_cmd(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(5000, "--port"),
) -> None:
    """Run the HTTP API."""
    from web_app import app as web_app

    web_app.run(host=host, port=port)


if __name__ == "__main__":
    app()
