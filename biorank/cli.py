"""Command-line interface for the biorank pipeline."""

from __future__ import annotations

import argparse
from typing import Iterable

from biorank.pipeline.driver import run_pipeline_from_config


def main(argv: Iterable[str] | None = None) -> int:
    """Run the candidate biomarker pipeline from a JSON config.

    Args:
        argv: Command-line arguments (if None, uses sys.argv).

    Returns:
        Exit code (0 for success).
    """
    parser = argparse.ArgumentParser(description="biorank candidate biomarker pipeline")
    parser.add_argument(
        "--config",
        default="configs/biorank_example.json",
        help="Path to JSON config",
    )
    args = parser.parse_args(list(argv) if argv is not None else None)

    result = run_pipeline_from_config(args.config)
    print(f"candidates={len(result.candidates)}")
    print(f"aggregated_genes={result.aggregated.provenance.shape[0]}")
    print(f"oob_error={result.ensemble.oob_error}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
