"""
Stage 6: Pathway Enrichment Analysis

Over-representation analysis (Enrichr) of the up-, down- and all-regulated
significant genes of every comparison, plus optional GSEA prerank on the
Wald statistic.

Gene sets are Enrichr library names (online) or local .gmt files (offline).

Input:
- deg_summary.csv, deg_<comparison>_annotated.csv: From Stage 5
- comparisons.json: From Stage 4

Output:
- enrichment_<comparison>.csv: Significant terms per gene list and library
- prerank_<comparison>.csv: GSEA prerank results (when run_prerank)
- enrichment_summary.csv: Term counts and top term per comparison/list/library
- gene_to_pathway.csv: Gene to pathway mapping
- meta_stage6_enrichment.json
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd

import gseapy as gp

from ..utils.base_stage import BaseStage

ENRICHMENT_COLUMNS = [
    'comparison', 'gene_list', 'database', 'term_name', 'overlap', 'gene_count',
    'pvalue', 'padj', 'odds_ratio', 'combined_score', 'genes',
]

PRERANK_COLUMNS = ['comparison', 'database', 'term_name', 'es', 'nes', 'pvalue', 'fdr', 'lead_genes']


class EnrichmentStage(BaseStage):
    """Stage for Enrichr over-representation and GSEA prerank analysis."""

    GENE_LISTS = ("up", "down", "all")

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "gene_sets": ["GO_Biological_Process_2023", "KEGG_2021_Human"],
            "enrichment_padj_cutoff": 0.05,
            "min_genes": 3,  # Minimum overlap per term, and minimum list size
            "use_background": True,  # Background = all tested genes
            "top_terms": 20,
            "run_prerank": False,
            "prerank_permutations": 1000,
            "prerank_min_size": 15,
            "prerank_max_size": 500,
            "seed": 42,
        }
        super().__init__("stage6_enrichment", input_dir, output_dir, config, default_config)

        self.comparisons: List[Dict[str, Any]] = []
        self.annotated: Dict[str, pd.DataFrame] = {}

    def validate_inputs(self) -> bool:
        """Validate Stage 5 outputs and gene-set sources."""
        self.comparisons = self.load_json("comparisons.json")
        for comp in self.comparisons:
            self.annotated[comp['name']] = self.load_csv(f"deg_{comp['name']}_annotated.csv")

        for source in self.config["gene_sets"]:
            if str(source).endswith(".gmt") and not self._resolve_gene_sets(source).exists():
                self.logger.error(f"Gene set file not found: {source}")
                return False

        return True

    def _resolve_gene_sets(self, source: str) -> Union[str, Path]:
        """Local .gmt path (relative to the input dir) or an Enrichr library name."""
        if not str(source).endswith(".gmt"):
            return source
        path = Path(source)
        return path if path.is_absolute() else self.input_dir / path

    @staticmethod
    def _database_label(source: str) -> str:
        return Path(source).stem if str(source).endswith(".gmt") else source

    def _run_enrichr(
        self,
        gene_list: List[str],
        source: str,
        background: Optional[List[str]]
    ) -> Optional[pd.DataFrame]:
        """Run Enrichr for one gene list against one library."""
        gene_sets = self._resolve_gene_sets(source)
        try:
            enr = gp.enrichr(
                gene_list=gene_list,
                gene_sets=str(gene_sets),
                organism=self.config["organism"],
                background=background,
                outdir=None,  # Don't save files
                cutoff=self.config["enrichment_padj_cutoff"],
                no_plot=True
            )
            results = enr.results
        except Exception as e:
            self.logger.warning(f"Enrichr failed for {self._database_label(source)}: {e}")
            return None

        if results is None or len(results) == 0:
            return None

        results = results[results['Adjusted P-value'] < self.config["enrichment_padj_cutoff"]]
        results = results[results['Overlap'].apply(
            lambda x: int(x.split('/')[0]) >= self.config["min_genes"]
        )]

        results = results.rename(columns={
            'Term': 'term_name',
            'Adjusted P-value': 'padj',
            'P-value': 'pvalue',
            'Odds Ratio': 'odds_ratio',
            'Combined Score': 'combined_score',
            'Overlap': 'overlap',
            'Genes': 'genes'
        })
        results['gene_count'] = results['overlap'].apply(lambda x: int(x.split('/')[0]))
        results['database'] = self._database_label(source)

        return results.sort_values('padj')

    def _ranking(self, df: pd.DataFrame) -> pd.Series:
        """Symbols ranked by Wald statistic; duplicate symbols keep the largest |stat|."""
        ranked = df.dropna(subset=['stat'])[['symbol', 'stat']].copy()
        ranked['abs_stat'] = ranked['stat'].abs()
        ranked = ranked.sort_values('abs_stat', ascending=False).drop_duplicates('symbol')
        return ranked.set_index('symbol')['stat'].sort_values(ascending=False)

    def _run_prerank(self, name: str, df: pd.DataFrame) -> pd.DataFrame:
        """GSEA prerank of one comparison against every library."""
        ranking = self._ranking(df)
        frames = []
        for source in self.config["gene_sets"]:
            label = self._database_label(source)
            self.logger.info(f"Prerank {name} / {label} ({len(ranking)} ranked genes)...")
            try:
                pre = gp.prerank(
                    rnk=ranking,
                    gene_sets=str(self._resolve_gene_sets(source)),
                    permutation_num=self.config["prerank_permutations"],
                    min_size=self.config["prerank_min_size"],
                    max_size=self.config["prerank_max_size"],
                    seed=self.config["seed"],
                    threads=self.config["threads"],
                    outdir=None,
                    no_plot=True
                )
            except Exception as e:
                self.logger.warning(f"Prerank failed for {name} / {label}: {e}")
                continue

            res = pre.res2d.rename(columns={
                'Term': 'term_name',
                'ES': 'es',
                'NES': 'nes',
                'NOM p-val': 'pvalue',
                'FDR q-val': 'fdr',
                'Lead_genes': 'lead_genes'
            })
            for col in ('es', 'nes', 'pvalue', 'fdr'):
                res[col] = pd.to_numeric(res[col], errors='coerce')
            res['comparison'] = name
            res['database'] = label
            frames.append(res.reindex(columns=PRERANK_COLUMNS))

        if not frames:
            return pd.DataFrame(columns=PRERANK_COLUMNS)
        return pd.concat(frames, ignore_index=True).sort_values('fdr')

    def _create_gene_to_pathway_mapping(self, all_results: pd.DataFrame) -> pd.DataFrame:
        """Create reverse mapping from genes to pathways."""
        gene_pathways: Dict[str, Dict[str, List[str]]] = {}

        for _, row in all_results.drop_duplicates(['database', 'term_name', 'genes']).iterrows():
            for gene in str(row['genes']).split(';'):
                gene = gene.strip()
                info = gene_pathways.setdefault(gene, {'pathway_ids': [], 'databases': []})
                pathway_id = f"{row['database']}:{row['term_name']}"
                if pathway_id not in info['pathway_ids']:
                    info['pathway_ids'].append(pathway_id)
                    info['databases'].append(row['database'])

        rows = []
        for gene, info in gene_pathways.items():
            rows.append({
                'gene_id': gene,
                'pathway_count': len(info['pathway_ids']),
                'pathway_ids': ';'.join(info['pathway_ids']),
                'databases': ';'.join(sorted(set(info['databases'])))
            })

        return pd.DataFrame(rows, columns=['gene_id', 'pathway_count', 'pathway_ids', 'databases'])

    def run(self) -> Dict[str, Any]:
        """Execute enrichment for every comparison."""
        min_genes = self.config["min_genes"]
        all_results = []
        summary_rows = []
        prerank_counts = {}

        for comp in self.comparisons:
            name = comp['name']
            df = self.annotated[name]
            significant = df[df['significant']]

            background = None
            if self.config["use_background"]:
                background = df['symbol'].dropna().astype(str).unique().tolist()

            gene_lists = {
                "up": significant.loc[significant['direction'] == 'up', 'symbol'],
                "down": significant.loc[significant['direction'] == 'down', 'symbol'],
                "all": significant['symbol'],
            }

            comparison_results = []
            for list_name in self.GENE_LISTS:
                genes = gene_lists[list_name].dropna().astype(str).unique().tolist()
                if len(genes) < min_genes:
                    self.logger.info(f"{name}/{list_name}: {len(genes)} genes (< {min_genes}), skipping")
                    continue

                self.logger.info(f"{name}/{list_name}: enrichment of {len(genes)} genes")
                for source in self.config["gene_sets"]:
                    results = self._run_enrichr(genes, source, background)
                    label = self._database_label(source)
                    n_terms = 0 if results is None else len(results)
                    summary_rows.append({
                        'comparison': name,
                        'gene_list': list_name,
                        'database': label,
                        'genes_tested': len(genes),
                        'significant_terms': n_terms,
                        'top_term': results['term_name'].iloc[0] if n_terms else None,
                        'top_padj': results['padj'].iloc[0] if n_terms else np.nan,
                    })
                    if n_terms:
                        results['comparison'] = name
                        results['gene_list'] = list_name
                        comparison_results.append(results)

            if comparison_results:
                combined = pd.concat(comparison_results, ignore_index=True)[ENRICHMENT_COLUMNS]
                all_results.append(combined)
                out = combined.groupby(['gene_list', 'database'], sort=False).head(self.config["top_terms"])
            else:
                out = pd.DataFrame(columns=ENRICHMENT_COLUMNS)
            self.save_csv(out, f"enrichment_{name}.csv")

            if self.config["run_prerank"]:
                prerank = self._run_prerank(name, df)
                self.save_csv(prerank, f"prerank_{name}.csv")
                prerank_counts[name] = int((prerank['fdr'] < self.config["enrichment_padj_cutoff"]).sum())

        summary = pd.DataFrame(summary_rows, columns=[
            'comparison', 'gene_list', 'database', 'genes_tested',
            'significant_terms', 'top_term', 'top_padj'
        ])
        self.save_csv(summary, "enrichment_summary.csv")

        if all_results:
            gene_pathway_map = self._create_gene_to_pathway_mapping(pd.concat(all_results, ignore_index=True))
        else:
            self.logger.warning("No significant terms found in any comparison")
            gene_pathway_map = self._create_gene_to_pathway_mapping(pd.DataFrame(columns=ENRICHMENT_COLUMNS))
        self.save_csv(gene_pathway_map, "gene_to_pathway.csv")

        total_terms = int(summary['significant_terms'].sum()) if len(summary) else 0
        self.logger.info("Enrichment Analysis Complete:")
        self.logger.info(f"  Libraries: {[self._database_label(s) for s in self.config['gene_sets']]}")
        self.logger.info(f"  Total significant terms: {total_terms}")

        return {
            "gene_sets": self.config["gene_sets"],
            "total_significant_terms": total_terms,
            "background": "tested_genes" if self.config["use_background"] else "library",
            "prerank_significant_terms": prerank_counts,
        }

    def validate_outputs(self) -> bool:
        """Validate enrichment outputs."""
        for filename in ["enrichment_summary.csv", "gene_to_pathway.csv"]:
            if not (self.output_dir / filename).exists():
                self.logger.error(f"Missing {filename}")
                return False

        for comp in self.comparisons:
            if not (self.output_dir / f"enrichment_{comp['name']}.csv").exists():
                self.logger.error(f"Missing enrichment_{comp['name']}.csv")
                return False

        summary = pd.read_csv(self.output_dir / "enrichment_summary.csv")
        if len(summary) == 0 or summary['significant_terms'].sum() == 0:
            self.logger.warning("No significant terms found - this may be expected for some datasets")

        return True
