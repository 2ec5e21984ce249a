"""Pipeline I/O, logging, and table export helpers."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from biorank.core.types import CountMatrix, SampleMetadata
from biorank.errors import DataError


def ensure_dir(path: str | Path) -> None:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)


def _json_default(obj: Any) -> Any:
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, tuple):
        return list(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def write_json(path: str | Path, payload: dict[str, Any]) -> None:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True, default=_json_default)


def setup_logger(log_path: Path, logger_name: str) -> logging.Logger:
    ensure_dir(log_path.parent)
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")
    fh = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)
    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)
    return logger


def read_count_matrix(path: str | Path, gene_col: str = "gene") -> CountMatrix:
    """Read a genes x samples CSV/TSV whose first column (or ``gene_col``) holds gene IDs."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Count matrix not found: {p}")
    sep = "\t" if p.suffix.lower() in {".tsv", ".txt"} else ","
    df = pd.read_csv(p, sep=sep)
    key = gene_col if gene_col in df.columns else df.columns[0]
    df[key] = df[key].astype(str)
    df = df.set_index(key)
    df.index.name = "gene"
    return CountMatrix(counts=df)


def read_sample_metadata(
    path: str | Path, sample_col: str = "sample", group_col: str = "group"
) -> SampleMetadata:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Sample metadata not found: {p}")
    sep = "\t" if p.suffix.lower() in {".tsv", ".txt"} else ","
    df = pd.read_csv(p, sep=sep)
    if sample_col not in df.columns:
        raise DataError(f"Metadata is missing the sample column '{sample_col}'.")
    df[sample_col] = df[sample_col].astype(str)
    return SampleMetadata(table=df.set_index(sample_col), group_col=group_col)


def load_gmt(path: str | Path) -> dict[str, list[str]]:
    """Read gene sets from a GMT file: ``name<TAB>description<TAB>gene...``."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Gene set file not found: {p}")
    sets: dict[str, list[str]] = {}
    with p.open("r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            parts = [x.strip() for x in line.rstrip("\n").split("\t")]
            if not parts or not parts[0]:
                continue
            if len(parts) < 2:
                raise DataError(f"Malformed GMT line {lineno} in '{p}'.")
            if parts[0] in sets:
                raise DataError(f"Duplicate gene set name at line {lineno}.", [parts[0]])
            sets[parts[0]] = [g for g in parts[2:] if g]
    return sets


def write_table(df: pd.DataFrame, path: Path, index: bool = True) -> Path:
    ensure_dir(path.parent)
    df.to_csv(path, index=index)
    return path
