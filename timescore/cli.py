"""
Command-line interface for the time-score pipeline.

Usage:
    timescore preprocess --input raw.h5ad --output prepared.h5ad --config config/timescore.yaml
    timescore run --input prepared.h5ad --output results/ --config config/timescore.yaml
    timescore enrich --metasignatures results/metasignatures.csv --input prepared.h5ad --gmt go_bp.gmt
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .utils import LOGGER_NAME, load_config, set_random_seeds, setup_logging

logger = logging.getLogger(LOGGER_NAME)


def _load_optional_config(path: Optional[str]) -> dict:
    if path is None:
        return {}
    return load_config(path)


def cmd_preprocess(args: argparse.Namespace) -> int:
    """QC-filter, normalize and label a raw count matrix."""
    import anndata as ad

    from .qc import calculate_qc_metrics, filter_cells_qc, filter_genes
    from .preprocessing import preprocess_pipeline
    from .utils import save_checkpoint

    config = _load_optional_config(args.config)
    set_random_seeds(config.get('seed', 0))

    adata = ad.read_h5ad(args.input)
    logger.info(f"Loaded {args.input}: {adata.n_obs:,} cells x {adata.n_vars:,} genes")

    if not args.skip_qc:
        adata = calculate_qc_metrics(adata, logger=logger)
        adata = filter_cells_qc(adata, config, logger=logger)
        adata = filter_genes(
            adata,
            min_cells=config.get('qc_metrics', {}).get('min_cells', 3),
            logger=logger
        )

    adata = preprocess_pipeline(adata, config, embed=not args.no_embed, logger=logger)
    save_checkpoint(adata, args.output, logger=logger)

    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Run signature discovery, scoring and validation."""
    import anndata as ad

    from .pipeline import export_results, run_pipeline
    from .visualization import plot_roc_curves, plot_time_score_by_category
    from .utils import save_checkpoint

    config = _load_optional_config(args.config)
    if args.seed is not None:
        config['seed'] = args.seed
    set_random_seeds(config.get('seed', 0))

    adata = ad.read_h5ad(args.input)
    logger.info(f"Loaded {args.input}: {adata.n_obs:,} cells x {adata.n_vars:,} genes")

    result = run_pipeline(
        adata,
        config,
        cell_types=args.cell_types,
        strict=args.strict,
        logger=logger
    )

    output_dir = Path(args.output)
    export_results(result, output_dir / "tables", logger=logger)

    if args.checkpoint:
        save_checkpoint(result, output_dir / "checkpoints" / "pipeline_result.pkl", logger=logger)

    if not args.no_plots:
        for name, cell_result in result.cell_types.items():
            slug = name.replace(' ', '_').replace('/', '_')
            plot_roc_curves(
                cell_result.validations,
                output_dir / "figures" / f"roc_{slug}.pdf",
                title=name,
                logger=logger
            )
            if 'time_category' in cell_result.scores.columns:
                plot_time_score_by_category(
                    cell_result.scores,
                    output_dir / "figures" / f"time_score_{slug}.pdf",
                    logger=logger
                )

    return 1 if result.failures and not result.cell_types else 0


def cmd_enrich(args: argparse.Namespace) -> int:
    """Test metasignatures for gene-set enrichment."""
    import anndata as ad
    import pandas as pd

    from .enrichment import read_gmt, run_enrichment

    metasignatures = pd.read_csv(args.metasignatures)
    adata = ad.read_h5ad(args.input, backed='r')
    universe = [str(g) for g in adata.var_names]
    gene_sets = read_gmt(args.gmt)

    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)

    for cell_type, rows in metasignatures.groupby('cell_type'):
        table = run_enrichment(
            rows['gene'].astype(str),
            universe,
            gene_sets,
            min_term_size=args.min_term_size,
            max_term_size=args.max_term_size,
            logger=logger
        )
        slug = str(cell_type).replace(' ', '_').replace('/', '_')
        path = output_dir / f"enrichment_{slug}.csv"
        table.to_csv(path, index=False)
        logger.info(f"Saved enrichment for {cell_type}: {path}")

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='timescore',
        description='Time-until-cryopreservation signature discovery for PBMC scRNA-seq'
    )
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    parser.add_argument('--log-file', default=None, help='Also write logs to this file')

    subparsers = parser.add_subparsers(dest='command')

    p_pre = subparsers.add_parser('preprocess', help='QC, normalize and label raw data')
    p_pre.add_argument('--input', required=True, help='Raw count H5AD')
    p_pre.add_argument('--output', required=True, help='Prepared H5AD')
    p_pre.add_argument('--config', default=None, help='YAML configuration')
    p_pre.add_argument('--skip-qc', action='store_true', help='Input is already QC-filtered')
    p_pre.add_argument('--no-embed', action='store_true', help='Skip PCA/UMAP/Leiden')
    p_pre.set_defaults(func=cmd_preprocess)

    p_run = subparsers.add_parser('run', help='Discover, score and validate signatures')
    p_run.add_argument('--input', required=True, help='Prepared H5AD')
    p_run.add_argument('--output', required=True, help='Output directory')
    p_run.add_argument('--config', default=None, help='YAML configuration')
    p_run.add_argument('--cell-types', nargs='+', default=None, help='Cell types to analyse')
    p_run.add_argument('--seed', type=int, default=None, help='Override the configured seed')
    p_run.add_argument('--strict', action='store_true', help='Stop at the first failing cell type')
    p_run.add_argument('--checkpoint', action='store_true', help='Pickle the full result')
    p_run.add_argument('--no-plots', action='store_true', help='Skip figures')
    p_run.set_defaults(func=cmd_run)

    p_enr = subparsers.add_parser('enrich', help='Gene-set enrichment of metasignatures')
    p_enr.add_argument('--metasignatures', required=True, help='metasignatures.csv from run')
    p_enr.add_argument('--input', required=True, help='H5AD defining the gene universe')
    p_enr.add_argument('--gmt', required=True, help='Gene sets in GMT format')
    p_enr.add_argument('--output', default='.', help='Output directory')
    p_enr.add_argument('--min-term-size', type=int, default=5)
    p_enr.add_argument('--max-term-size', type=int, default=500)
    p_enr.set_defaults(func=cmd_enrich)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    setup_logging(log_file=args.log_file, log_level='DEBUG' if args.verbose else 'INFO')

    try:
        return args.func(args)
    except FileNotFoundError as err:
        logger.error(str(err))
        return 1


if __name__ == '__main__':
    sys.exit(main())
