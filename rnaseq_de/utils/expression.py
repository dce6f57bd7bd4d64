"""
Abundance table helpers: quant.sf loading, transcript-to-gene summarization,
low-count filtering and significance flagging.
"""

import itertools
import logging
from pathlib import Path
from typing import Dict, List, Mapping, Sequence, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

_ENSEMBL_VERSION = r"^(ENS[A-Z]*\d+)\.\d+$"


def strip_version(ids: Sequence[str]) -> pd.Index:
    """Drop Ensembl version suffixes (ENSG00000141510.18 -> ENSG00000141510)."""
    return pd.Index(ids).astype(str).str.replace(_ENSEMBL_VERSION, r"\1", regex=True)


def read_quant_file(path: Path) -> pd.DataFrame:
    """Read a Salmon quant.sf table indexed by transcript name."""
    df = pd.read_csv(path, sep="\t", index_col="Name")
    expected = {"Length", "EffectiveLength", "TPM", "NumReads"}
    missing = expected - set(df.columns)
    if missing:
        raise ValueError(f"{path} is not a Salmon quant.sf file (missing {sorted(missing)})")
    return df


def load_quant_matrix(manifest: Mapping[str, Path], column: str = "NumReads") -> pd.DataFrame:
    """
    Combine one column of per-sample quant.sf files into a
    transcripts x samples matrix; columns follow the manifest's order.
    """
    series = []
    for sample_id, quant_file in manifest.items():
        values = read_quant_file(Path(quant_file))[column]
        values.name = sample_id
        series.append(values)

    matrix = pd.concat(series, axis=1).fillna(0)
    matrix.index.name = "transcript_id"
    return matrix


def load_tx2gene(path: Path) -> pd.Series:
    """Read a two-column transcript -> gene table (CSV or TSV, header optional)."""
    path = Path(path)
    sep = "\t" if path.suffix in (".tsv", ".txt") else ","
    df = pd.read_csv(path, sep=sep, header=None, dtype=str)
    if df.iloc[0, 0].lower() in ("transcript_id", "tx_id", "transcript", "txname", "tx"):
        df = df.iloc[1:]
    mapping = pd.Series(df.iloc[:, 1].values, index=df.iloc[:, 0].values, name="gene_id")
    return mapping[~mapping.index.duplicated()]


def summarize_to_genes(
    tx_matrix: pd.DataFrame,
    tx2gene: pd.Series,
    ignore_version: bool = True
) -> pd.DataFrame:
    """
    Sum transcript-level values per gene. Transcripts absent from
    ``tx2gene`` are dropped and reported.
    """
    genes = tx2gene.reindex(tx_matrix.index)

    if ignore_version and genes.isna().any():
        stripped_map = pd.Series(tx2gene.values, index=strip_version(tx2gene.index))
        stripped_map = stripped_map[~stripped_map.index.duplicated()]
        missing = genes.isna().values
        genes[missing] = stripped_map.reindex(strip_version(tx_matrix.index[missing])).values

    unmapped = int(genes.isna().sum())
    if unmapped == len(genes):
        raise ValueError("No transcripts could be mapped to genes - check tx2gene identifiers")
    if unmapped:
        logger.warning(f"{unmapped}/{len(genes)} transcripts have no gene mapping and were dropped")

    gene_matrix = tx_matrix[genes.notna().values].groupby(genes.dropna().values).sum()
    gene_matrix.index.name = "gene_id"
    return gene_matrix


def filter_low_counts(counts: pd.DataFrame, min_count: int = 10, min_samples: int = 2) -> pd.DataFrame:
    """Keep genes with at least ``min_count`` reads in at least ``min_samples`` samples."""
    keep = (counts >= min_count).sum(axis=1) >= min_samples
    return counts.loc[keep]


def flag_significant(
    results: pd.DataFrame,
    lfc_cutoff: float = 2.0,
    padj_cutoff: float = 0.05,
    lfc_column: str = "log2FC"
) -> pd.DataFrame:
    """
    Add ``significant`` and ``direction`` columns.

    significant = (LFC > cutoff AND padj < p) OR (LFC < -cutoff AND padj < p);
    a missing padj is never significant.
    """
    df = results.copy()
    lfc = df[lfc_column]
    padj_ok = df["padj"].lt(padj_cutoff)

    up = (lfc > lfc_cutoff) & padj_ok
    down = (lfc < -lfc_cutoff) & padj_ok

    df["significant"] = up | down
    df["direction"] = np.select([up, down], ["up", "down"], default="ns")
    return df


def comparison_name(numerator: str, denominator: str) -> str:
    return f"{numerator}_vs_{denominator}"


def pairwise_comparisons(levels: Sequence[str], reference: str) -> List[Tuple[str, str]]:
    """
    Every non-reference level against the reference, then every pair of
    non-reference levels (in the given order).
    """
    if reference not in levels:
        raise ValueError(f"Reference level '{reference}' not in {list(levels)}")

    others = [level for level in levels if level != reference]
    comparisons = [(level, reference) for level in others]
    comparisons += list(itertools.combinations(others, 2))
    return comparisons


def manifest_from_frame(df: pd.DataFrame, path_column: str) -> Dict[str, Path]:
    """Ordered sample_id -> path mapping from a manifest table."""
    return {row["sample_id"]: Path(row[path_column]) for _, row in df.iterrows()}
