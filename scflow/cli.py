#!/usr/bin/env python3
"""
Command line interface for scflow.

Commands:
    run      Run the standard clustering workflow on a 10X count matrix
    qc       Report QC metrics and adaptive thresholds without filtering
    config   Print or write the default workflow configuration
    version  Show the installed version
"""

from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from scflow.config.settings import get_settings
from scflow.config.workflow_config import WorkflowConfig
from scflow.core.exceptions import ScflowError
from scflow.tools.ingestion_service import IngestionService
from scflow.tools.quality_service import QualityService
from scflow.tools.workflow_service import StandardWorkflowService
from scflow.utils.logger import configure_cli_logging
from scflow.version import __version__

console = Console()

app = typer.Typer(
    name="scflow",
    help="Guided clustering of single-cell RNA-seq count matrices",
    add_completion=False,
    rich_markup_mode="rich",
)


def _load_config(config_path: Optional[Path]) -> WorkflowConfig:
    settings = get_settings()
    path = config_path or settings.WORKFLOW_CONFIG
    if path is None:
        return WorkflowConfig()
    if not Path(path).exists():
        console.print(f"[red]Configuration file not found:[/red] {path}")
        raise typer.Exit(1)
    return WorkflowConfig.load(Path(path))


def _print_error(error: ScflowError) -> None:
    console.print(f"[red]Error:[/red] {error.message}")
    for suggestion in error.details.get("suggestions", []):
        console.print(f"[dim]  - {suggestion}[/dim]")


def _cluster_table(dataset) -> Table:
    table = Table(title="Clusters", box=box.SIMPLE, header_style="bold cyan")
    table.add_column("Identity", style="cyan")
    table.add_column("Cells", justify="right")
    counts = dataset.identities.value_counts(sort=False)
    for label, n_cells in counts.items():
        table.add_row(str(label), str(int(n_cells)))
    return table


def _marker_table(markers) -> Table:
    table = Table(title="Top markers", box=box.SIMPLE, header_style="bold cyan")
    for column in ("cluster", "gene", "avg_log2FC", "pct_1", "pct_2", "p_val_adj"):
        table.add_column(column, justify="left" if column in ("cluster", "gene") else "right")
    for row in markers.itertuples(index=False):
        table.add_row(
            str(row.cluster),
            str(row.gene),
            f"{row.avg_log2FC:.3f}",
            f"{row.pct_1:.3f}",
            f"{row.pct_2:.3f}",
            f"{row.p_val_adj:.2e}",
        )
    return table


@app.command()
def run(
    data: Path = typer.Argument(
        ..., help="10X matrix directory or 10X .h5 file", exists=True
    ),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Workflow configuration JSON. Can also be set via SCFLOW_WORKFLOW_CONFIG",
    ),
    output_dir: Optional[Path] = typer.Option(
        None,
        "--output-dir",
        "-o",
        help="Directory for marker tables, cluster assignments and the analysis script",
    ),
    script: bool = typer.Option(
        True, "--script/--no-script", help="Write a Python script repeating the analysis"
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Logging level. Defaults to SCFLOW_LOG_LEVEL",
    ),
):
    """Run the standard clustering workflow and write its results."""
    settings = get_settings()
    configure_cli_logging(log_level or settings.LOG_LEVEL, console=console)
    output_dir = output_dir or settings.OUTPUT_DIR

    console.print(
        Panel.fit(
            f"[bold]scflow {__version__}[/bold]\n[dim]{data}[/dim]",
            border_style="cyan",
            padding=(0, 2),
        )
    )

    workflow = StandardWorkflowService()
    try:
        config = _load_config(config_path)
        dataset = workflow.run(data, config)
    except ScflowError as e:
        _print_error(e)
        raise typer.Exit(1)

    output_dir.mkdir(parents=True, exist_ok=True)
    dataset.identities.to_frame(name="identity").to_csv(output_dir / "clusters.csv")
    for name, table in dataset.marker_tables.items():
        table.to_csv(output_dir / f"{name}.csv", index=False)
    if script:
        dataset.export_script(output_dir / "analysis.py")

    summary = dataset.summary()
    console.print()
    console.print(
        f"[green]Done:[/green] {summary['n_cells']} cells, {summary['n_genes']} genes, "
        f"{summary['n_identities']} identities using {summary['n_pcs']} PCs"
    )
    console.print(_cluster_table(dataset))
    if "top_markers" in dataset.marker_tables:
        console.print(_marker_table(dataset.marker_tables["top_markers"]))
    console.print(f"[dim]Results written to {output_dir}[/dim]")


@app.command()
def qc(
    data: Path = typer.Argument(
        ..., help="10X matrix directory or 10X .h5 file", exists=True
    ),
    mt_prefix: str = typer.Option("MT-", "--mt-prefix", help="Mitochondrial gene prefix"),
    n_mads: float = typer.Option(
        3.0, "--n-mads", help="MADs from the median for adaptive thresholds"
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Logging level. Defaults to SCFLOW_LOG_LEVEL",
    ),
):
    """Report per-cell QC metrics and suggested thresholds."""
    configure_cli_logging(log_level or get_settings().LOG_LEVEL, console=console)
    ingestion = IngestionService()
    quality = QualityService()

    try:
        if data.is_dir():
            adata, _, _ = ingestion.read_10x_mtx(data)
        else:
            adata, _, _ = ingestion.read_10x_h5(data)
        adata, stats, _ = quality.calculate_qc_metrics(adata, mt_prefix=mt_prefix)
        thresholds = quality.suggest_adaptive_thresholds(
            adata, n_mads=n_mads, mt_prefix=mt_prefix
        )
    except ScflowError as e:
        _print_error(e)
        raise typer.Exit(1)

    table = Table(title="QC metrics", box=box.SIMPLE, header_style="bold cyan")
    table.add_column("Metric", style="cyan")
    table.add_column("Median", justify="right")
    table.add_column("MAD", justify="right")
    table.add_column("Lower", justify="right")
    table.add_column("Upper", justify="right")
    for metric, bounds in thresholds.items():
        lower = bounds.get("lower")
        table.add_row(
            metric,
            f"{bounds['median']:.2f}",
            f"{bounds['mad']:.2f}",
            f"{lower:.2f}" if lower is not None else "-",
            f"{bounds['upper']:.2f}",
        )

    console.print(
        f"{stats['n_cells']} cells, {stats['n_mt_genes']} mitochondrial genes"
    )
    console.print(table)


@app.command()
def config(
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Write the default configuration to this file"
    ),
):
    """Print or write the default workflow configuration."""
    defaults = WorkflowConfig()
    if output is None:
        print(defaults.model_dump_json(indent=2))
        return
    defaults.save(output)
    console.print(f"[green]Wrote default configuration to[/green] {output}")


@app.command()
def version():
    """Show the installed version."""
    console.print(f"scflow {__version__}")


if __name__ == "__main__":
    app()
