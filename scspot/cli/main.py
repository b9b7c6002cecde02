"""Command-line interface for scspot.

Provides CLI commands for running the analysis pipeline on AnnData files.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
import yaml

from ..core.errors import EngineError


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("scspot")


@click.group()
@click.version_option(version="1.0.0", prog_name="scspot")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """scspot: clustering, markers and spatial variability for count data.

    Examples:

        # Run the full pipeline
        scspot run --input counts.h5ad --out results/

        # Spot data with gene-set scores
        scspot run -i spots.h5ad -o results/ --spatial --gene-sets sets.yaml

        # Print the default configuration
        scspot show-config > engine.yaml
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Input AnnData file (.h5ad) with raw counts")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Engine configuration file (YAML)")
@click.option("--layer", default=None, help="Count layer to use (default: X)")
@click.option("--gene-sets", "gene_sets_path", type=click.Path(exists=True),
              help="Gene sets for module scoring (YAML or CSV)")
@click.option("--spatial", is_flag=True, help="Rank spatially variable genes")
@click.option("--resolution", type=float, default=None, help="Clustering resolution")
@click.option("--seed", type=int, default=None, help="Random seed for every stage")
@click.option("--log-level", default="INFO",
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
              help="Pipeline log level")
@click.option("--log-file", type=click.Path(), default=None,
              help="Also write engine records to this file (timestamped)")
@click.pass_context
def run(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    config: Optional[str],
    layer: Optional[str],
    gene_sets_path: Optional[str],
    spatial: bool,
    resolution: Optional[float],
    seed: Optional[int],
    log_level: str,
    log_file: Optional[str],
) -> None:
    """Run the analysis pipeline.

    Writes one CSV per result table, the effective configuration and a
    summary.json into the output directory.
    """
    logger = ctx.obj["logger"]

    # Import here to avoid slow startup
    import anndata
    from ..core.data import CountMatrix, SpatialCoordinates
    from ..io import (
        get_logger,
        load_gene_sets,
        log_json,
        log_yaml,
        write_json,
        write_record,
        write_tables,
    )
    from ..pipeline import AnalysisPipeline, EngineConfig, FLAT_OPTIONS, PipelineLogger

    out_dir = Path(output_path)
    out_dir.mkdir(parents=True, exist_ok=True)

    try:
        cfg = EngineConfig.from_yaml(Path(config)) if config else EngineConfig()
        if resolution is not None:
            cfg.set_option(FLAT_OPTIONS["cluster_resolution"], resolution)
        if seed is not None:
            cfg.apply_seed(seed)
        cfg.validate()
    except EngineError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    logger.info("Loading AnnData from %s", input_path)
    adata = anndata.read_h5ad(input_path)
    logger.info("Loaded %d observations, %d genes", adata.n_obs, adata.n_vars)

    gene_sets = load_gene_sets(gene_sets_path) if gene_sets_path else None
    if log_file:
        _, log_path = get_logger("scspot", log_file, level=getattr(logging, log_level))
        logger.info("Engine log: %s", log_path)

    pipeline_logger = PipelineLogger(str(out_dir / "logs"), log_level=log_level)
    pipeline_logger.setup()
    log_yaml(pipeline_logger.logger, {"engine": cfg.to_dict()})
    try:
        counts = CountMatrix.from_anndata(adata, layer=layer)
        coordinates = SpatialCoordinates.from_anndata(adata) if spatial else None
        result = AnalysisPipeline(cfg, pipeline_logger).run(
            counts, coordinates=coordinates, gene_sets=gene_sets
        )
        log_json(pipeline_logger.logger, {"run_summary": result.summary()})
    except EngineError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        pipeline_logger.close()

    write_tables(result.tables(), out_dir)
    write_json(result.summary(), out_dir / "summary.json")
    with open(out_dir / "config.yaml", "w") as f:
        yaml.safe_dump({"engine": cfg.to_dict()}, f, sort_keys=False)

    record = {
        "timestamp": datetime.now().isoformat(timespec="seconds"),
        "input": str(input_path),
        "n_obs": result.qc.obs_kept,
        "n_clusters": result.clusters.n_clusters,
        "random_seed": cfg.random_seed,
        "output": str(out_dir),
    }
    write_record(out_dir / "logs" / "runs.jsonl", record)
    log_json(logger, record)

    click.echo(f"Pipeline complete: {result.clusters.n_clusters} clusters")
    if result.spatial is not None:
        click.echo(f"Spatially variable genes: {len(result.spatial.significant_genes)}")
    click.echo(f"Output saved to: {out_dir}")


@cli.command("show-config")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Configuration file to resolve (defaults if omitted)")
def show_config(config: Optional[str]) -> None:
    """Print the effective engine configuration as YAML."""
    from ..pipeline import EngineConfig

    try:
        cfg = EngineConfig.from_yaml(Path(config)) if config else EngineConfig()
    except EngineError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    click.echo(yaml.safe_dump({"engine": cfg.to_dict()}, sort_keys=False), nl=False)


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
