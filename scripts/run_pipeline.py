#!/usr/bin/env python3
"""Run the biorank candidate biomarker pipeline."""

from __future__ import annotations

import argparse

from biorank.pipeline.driver import run_pipeline_from_config


def main() -> int:
    parser = argparse.ArgumentParser(description="biorank candidate biomarker pipeline")
    parser.add_argument(
        "--config",
        default="configs/biorank_example.json",
        help="Path to JSON config",
    )
    args = parser.parse_args()
    run_pipeline_from_config(args.config)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
