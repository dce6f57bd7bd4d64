"""
Stage 5: Annotation & Significance Calling

Attaches gene symbols to every comparison's DE results and flags significant
genes with the literal thresholds (|log2FC| > lfc_cutoff and padj < padj_cutoff).

Input:
- comparisons.json, deg_<comparison>_results.csv: From Stage 4
- gene_symbols.csv: gene_id -> symbol table (optional, mygene lookup otherwise)

Output:
- deg_<comparison>_annotated.csv: All tested genes with symbol/significant/direction
- deg_<comparison>_significant.csv: Significant genes only, sorted by padj
- deg_summary.csv: Tested/significant/up/down counts per comparison
- gene_symbols.csv: The symbol mapping used
- meta_stage5_annotation.json
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from ..utils.base_stage import BaseStage
from ..utils.expression import flag_significant, strip_version


class AnnotationStage(BaseStage):
    """Stage for gene symbol annotation and significance flagging."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "gene_symbols": "gene_symbols.csv",
            "use_mygene": True,
        }
        super().__init__("stage5_annotation", input_dir, output_dir, config, default_config)

        self.comparisons: List[Dict[str, Any]] = []
        self.results: Dict[str, pd.DataFrame] = {}

    def validate_inputs(self) -> bool:
        """Validate Stage 4 results."""
        self.comparisons = self.load_json("comparisons.json")
        if not self.comparisons:
            self.logger.error("comparisons.json lists no comparisons")
            return False

        for comp in self.comparisons:
            df = self.load_csv(f"deg_{comp['name']}_results.csv")
            required_cols = ['gene_id', 'log2FC', 'padj']
            missing = [c for c in required_cols if c not in df.columns]
            if missing:
                self.logger.error(f"{comp['name']} results missing columns: {missing}")
                return False
            self.results[comp['name']] = df

        return True

    def _query_mygene(self, gene_ids: List[str]) -> Dict[str, str]:
        """Look up symbols for Ensembl or Entrez gene IDs."""
        ids = [str(g) for g in gene_ids]
        if all(g.isdigit() for g in ids):
            scopes, query_ids = 'entrezgene', ids
        else:
            scopes, query_ids = 'ensembl.gene', list(strip_version(ids))

        self.logger.info(f"Querying mygene for {len(query_ids)} symbols ({scopes})...")
        import mygene
        mg = mygene.MyGeneInfo()
        results = mg.querymany(
            list(dict.fromkeys(query_ids)), scopes=scopes, fields='symbol',
            species=self.config["organism"], verbose=False
        )

        found = {}
        for r in results:
            if 'symbol' in r and str(r['query']) not in found:
                found[str(r['query'])] = r['symbol']

        return {gid: found[qid] for gid, qid in zip(ids, query_ids) if qid in found}

    def _symbol_map(self, gene_ids: List[str]) -> pd.Series:
        """gene_id -> symbol; unresolved genes keep their ID."""
        mapping: Dict[str, str] = {}

        table = self.load_csv(self.config["gene_symbols"], required=False) if self.config["gene_symbols"] else None
        if table is not None:
            table = table.dropna(subset=['symbol'])
            mapping = dict(zip(table['gene_id'].astype(str), table['symbol'].astype(str)))
            self.logger.info(f"Loaded {len(mapping)} symbols from {self.config['gene_symbols']}")
        elif self.config["use_mygene"]:
            try:
                mapping = self._query_mygene(gene_ids)
                self.logger.info(f"Resolved {len(mapping)}/{len(gene_ids)} symbols via mygene")
            except Exception as e:
                self.logger.warning(f"mygene lookup failed: {e}. Using gene IDs as symbols.")

        ids = pd.Series(gene_ids, index=gene_ids)
        symbols = ids.map(mapping).fillna(ids)
        symbols.name = "symbol"
        return symbols

    def run(self) -> Dict[str, Any]:
        """Annotate and flag every comparison."""
        gene_ids = list(dict.fromkeys(
            g for df in self.results.values() for g in df['gene_id'].astype(str)
        ))
        symbols = self._symbol_map(gene_ids)
        self.save_csv(symbols.rename_axis("gene_id").reset_index(), "gene_symbols.csv")

        lfc_cutoff = self.config["lfc_cutoff"]
        padj_cutoff = self.config["padj_cutoff"]
        self.logger.info(f"Significance: |log2FC| > {lfc_cutoff} and padj < {padj_cutoff}")

        summary_rows = []
        for comp in self.comparisons:
            name = comp['name']
            df = self.results[name].copy()
            df['gene_id'] = df['gene_id'].astype(str)
            df.insert(1, 'symbol', df['gene_id'].map(symbols))

            df = flag_significant(df, lfc_cutoff, padj_cutoff)
            df = df.sort_values('padj', na_position='last')

            significant = df[df['significant']]
            self.save_csv(df, f"deg_{name}_annotated.csv")
            self.save_csv(significant, f"deg_{name}_significant.csv")

            row = {
                "comparison": name,
                "factor": comp.get("factor"),
                "numerator": comp.get("numerator"),
                "denominator": comp.get("denominator"),
                "tested": int(df['padj'].notna().sum()),
                "significant": len(significant),
                "up": int((significant['direction'] == 'up').sum()),
                "down": int((significant['direction'] == 'down').sum()),
            }
            summary_rows.append(row)
            self.logger.info(f"  {name}: {row['significant']} significant ({row['up']} up, {row['down']} down)")

        summary = pd.DataFrame(summary_rows)
        self.save_csv(summary, "deg_summary.csv")

        return {
            "lfc_cutoff": lfc_cutoff,
            "padj_cutoff": padj_cutoff,
            "genes_annotated": int((symbols.values != symbols.index.values).sum()),
            "significant_per_comparison": dict(zip(summary['comparison'], summary['significant'])),
        }

    def validate_outputs(self) -> bool:
        """Validate annotated outputs."""
        if not (self.output_dir / "deg_summary.csv").exists():
            self.logger.error("Missing deg_summary.csv")
            return False

        for comp in self.comparisons:
            for suffix in ("annotated", "significant"):
                if not (self.output_dir / f"deg_{comp['name']}_{suffix}.csv").exists():
                    self.logger.error(f"Missing deg_{comp['name']}_{suffix}.csv")
                    return False

        return True
