"""
Command-line interface for batch analysis of replicated trial data.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional, Sequence

from .constants import (
    ADJUST_METHODS,
    DEFAULT_ADJUST,
    DEFAULT_ALPHA,
    DEFAULT_SINGULAR_POLICY,
    SINGULAR_POLICIES,
)
from .data_loader import load_data_from_path
from .pipeline import DEFAULT_TRAITS, PipelineConfig, Trait, run_analysis


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="agrotrial - IHS transformation and mixed-model inference for field trials",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python pipeline_cli.py --input trials.csv --outdir results/

  python pipeline_cli.py --input trials.xlsx --sheet-name 2023 \\
    --traits PIT YIELD --on-singular skip --outdir results/
        """
    )

    parser.add_argument(
        "--input",
        required=True,
        help="Path to CSV or XLSX file"
    )
    parser.add_argument(
        "--sheet-name",
        default=None,
        help="Sheet name for XLSX files (default: first sheet)"
    )
    parser.add_argument(
        "--outdir",
        default="outputs",
        help="Output directory for result tables (default: outputs/)"
    )
    parser.add_argument(
        "--traits",
        nargs="+",
        choices=[t.name for t in Trait],
        default=[t.name for t in DEFAULT_TRAITS],
        help="Traits to analyse (default: PIT NOPPT YIELD)"
    )
    parser.add_argument(
        "--alpha",
        type=float,
        default=DEFAULT_ALPHA,
        help="Significance level for letter groups (default: 0.05)"
    )
    parser.add_argument(
        "--adjust",
        choices=ADJUST_METHODS,
        default=DEFAULT_ADJUST,
        help="P-value adjustment for pairwise contrasts (default: tukey)"
    )
    parser.add_argument(
        "--on-singular",
        choices=SINGULAR_POLICIES,
        default=DEFAULT_SINGULAR_POLICY,
        help="What to do when a model fit is singular (default: abort)"
    )
    parser.add_argument(
        "--no-single-environment",
        action="store_true",
        help="Skip the per-environment models"
    )
    parser.add_argument(
        "--no-multi-environment",
        action="store_true",
        help="Skip the across-environment models"
    )
    parser.add_argument(
        "--plots",
        action="store_true",
        help="Write interaction plots as HTML next to the tables"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging"
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    """
    Main CLI entry point for batch analysis.

    Loads the trial table, runs the pipeline and writes one CSV per table.
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    outdir = Path(args.outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    def _write_plot(name, fig):
        fig.write_html(outdir / f"interaction_{name}.html")

    config = PipelineConfig(
        traits=tuple(args.traits),
        alpha=args.alpha,
        adjust=args.adjust,
        on_singular=args.on_singular,
        single_environment=not args.no_single_environment,
        multi_environment=not args.no_multi_environment,
        emit_plots=args.plots,
        plot_sink=_write_plot if args.plots else None,
    )

    print(f"Loading data from: {args.input}")
    df = load_data_from_path(args.input, sheet_name=args.sheet_name)
    print(f"Data loaded: {len(df)} rows, {len(df.columns)} columns")

    print("\nRunning analysis...")
    results = run_analysis(df, config)
    for trait, theta in results.thetas.items():
        print(f"✓ theta[{trait}] = {theta:.6g}")

    written = results.to_csv(outdir)
    print(f"\n✅ Analysis complete! Reports saved to: {outdir.resolve()}")
    print("\nGenerated files:")
    for path in sorted(written):
        print(f"  - {path.name}")


if __name__ == "__main__":
    main()
