"""
Stage 7: Visualization

Generates the standard figures of a knockdown DE study.

Input:
- samples.csv
- vst_counts.csv, comparisons.json: From Stage 4
- deg_<comparison>_annotated.csv: From Stage 5
- enrichment_<comparison>.csv: From Stage 6 (optional)

Output:
- figures/pca.png: PCA of the top variable VST genes
- figures/sample_distances.png: Sample-to-sample distance clustermap
- figures/top_genes_heatmap.png: Z-scored VST of top significant genes
- figures/volcano_<comparison>.png, figures/ma_<comparison>.png
- figures/venn_pairwise.png: Overlap of significant genes across pairwise comparisons
- figures/enrichment_<comparison>.png: Top enriched terms
- meta_stage7_visualization.json
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

import matplotlib
matplotlib.use('Agg')  # Non-interactive backend
import matplotlib.pyplot as plt
import seaborn as sns
from matplotlib_venn import venn2, venn3
from scipy.cluster.hierarchy import linkage
from scipy.spatial.distance import pdist, squareform
from sklearn.decomposition import PCA

from ..utils.base_stage import BaseStage


class VisualizationStage(BaseStage):
    """Stage for generating publication-quality figures."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "figure_format": ["png"],  # Add "svg" for vector output
            "dpi": 300,
            "style": "whitegrid",
            "color_palette": "RdBu_r",
            "figsize": {
                "pca": (8, 6),
                "distances": (8, 8),
                "heatmap": (10, 12),
                "volcano": (8, 7),
                "ma": (8, 6),
                "venn": (7, 7),
                "enrichment": (10, 7),
            },
            "pca_top_genes": 500,
            "top_genes_heatmap": 50,
            "label_top_genes": 10,
            "top_terms_plot": 15,
        }
        super().__init__("stage7_visualization", input_dir, output_dir, config, default_config)

        self.figures_dir = self.output_dir / "figures"
        self.figures_dir.mkdir(exist_ok=True)

        sns.set_style(self.config["style"])
        plt.rcParams['font.size'] = 11
        plt.rcParams['axes.labelsize'] = 12
        plt.rcParams['axes.titlesize'] = 14

        self.sheet = None
        self.vst: Optional[pd.DataFrame] = None
        self.comparisons: List[Dict[str, Any]] = []
        self.annotated: Dict[str, pd.DataFrame] = {}
        self.enrichment: Dict[str, pd.DataFrame] = {}

    def validate_inputs(self) -> bool:
        """Validate input files."""
        self.sheet = self.load_sample_sheet()

        vst = self.load_csv("vst_counts.csv")
        self.vst = vst.set_index(vst.columns[0])[self.sheet.sample_ids]

        self.comparisons = self.load_json("comparisons.json")
        for comp in self.comparisons:
            name = comp['name']
            self.annotated[name] = self.load_csv(f"deg_{name}_annotated.csv")
            enrichment = self.load_csv(f"enrichment_{name}.csv", required=False)
            if enrichment is not None:
                self.enrichment[name] = enrichment

        return True

    def _save_figure(self, fig: plt.Figure, name: str) -> List[str]:
        """Save figure in every configured format."""
        saved_files = []
        for fmt in self.config["figure_format"]:
            filepath = self.figures_dir / f"{name}.{fmt}"
            fig.savefig(filepath, dpi=self.config["dpi"], bbox_inches='tight',
                        facecolor='white', edgecolor='none')
            saved_files.append(str(filepath))
            self.logger.info(f"Saved {filepath.name}")
        plt.close(fig)
        return saved_files

    def _symbols(self) -> pd.Series:
        frames = [df[['gene_id', 'symbol']] for df in self.annotated.values()]
        symbols = pd.concat(frames).drop_duplicates('gene_id').set_index('gene_id')['symbol']
        return symbols

    # ------------------------------------------------------------------
    # Sample-level figures
    # ------------------------------------------------------------------

    def _plot_pca(self) -> Optional[List[str]]:
        """PCA of the most variable VST genes."""
        if self.vst.shape[1] < 3:
            self.logger.warning("Skipping PCA - fewer than 3 samples")
            return None

        self.logger.info("Generating PCA plot...")
        n_top = min(self.config["pca_top_genes"], len(self.vst))
        top = self.vst.loc[self.vst.var(axis=1).sort_values(ascending=False).index[:n_top]]

        pca = PCA(n_components=2)
        coords = pca.fit_transform(top.T.values)

        pcs = self.sheet.design_frame().loc[self.vst.columns].copy()
        pcs['PC1'] = coords[:, 0]
        pcs['PC2'] = coords[:, 1]

        fig, ax = plt.subplots(figsize=self.config["figsize"]["pca"])
        sns.scatterplot(data=pcs, x='PC1', y='PC2', hue='group', style='treatment',
                        s=140, ax=ax)
        for sample, row in pcs.iterrows():
            ax.annotate(sample, (row['PC1'], row['PC2']), fontsize=8,
                        ha='center', va='bottom', xytext=(0, 6), textcoords='offset points')

        ax.set_xlabel(f'PC1 ({pca.explained_variance_ratio_[0]*100:.1f}%)')
        ax.set_ylabel(f'PC2 ({pca.explained_variance_ratio_[1]*100:.1f}%)')
        ax.set_title(f'PCA: top {n_top} variable genes (VST)')
        ax.legend(bbox_to_anchor=(1.02, 1), loc='upper left')

        return self._save_figure(fig, "pca")

    def _plot_sample_distances(self) -> Optional[List[str]]:
        """Euclidean sample-to-sample distances on VST."""
        self.logger.info("Generating sample distance heatmap...")
        condensed = pdist(self.vst.T.values, metric='euclidean')
        distances = pd.DataFrame(squareform(condensed),
                                 index=self.vst.columns, columns=self.vst.columns)
        tree = linkage(condensed, method='average')

        g = sns.clustermap(distances, row_linkage=tree, col_linkage=tree,
                           cmap='Blues_r', figsize=self.config["figsize"]["distances"],
                           cbar_kws={'label': 'Euclidean distance'})
        g.figure.suptitle('Sample-to-sample distances (VST)', y=1.02)

        return self._save_figure(g.figure, "sample_distances")

    def _plot_heatmap(self) -> Optional[List[str]]:
        """Z-scored VST of the top significant genes across all comparisons."""
        significant = pd.concat(
            [df[df['significant']][['gene_id', 'padj']] for df in self.annotated.values()]
        )
        if len(significant) == 0:
            self.logger.warning("Skipping heatmap - no significant genes")
            return None

        ranked = significant.groupby('gene_id')['padj'].min().sort_values()
        genes = [g for g in ranked.index if g in self.vst.index][:self.config["top_genes_heatmap"]]

        expr = self.vst.loc[genes]
        zscore = expr.sub(expr.mean(axis=1), axis=0).div(expr.std(axis=1), axis=0).dropna()
        if len(zscore) < 2:
            self.logger.warning("Skipping heatmap - fewer than 2 variable significant genes")
            return None

        self.logger.info(f"Generating heatmap of {len(zscore)} genes...")
        labels = pd.Series(zscore.index, index=zscore.index)
        zscore.index = labels.map(self._symbols()).fillna(labels).values

        groups = self.sheet.design_frame().loc[zscore.columns, 'group']
        palette = dict(zip(groups.unique(), sns.color_palette('Set2', groups.nunique())))

        g = sns.clustermap(zscore, cmap=self.config["color_palette"], center=0,
                           col_colors=groups.map(palette),
                           yticklabels=len(zscore) <= 60,
                           figsize=self.config["figsize"]["heatmap"],
                           cbar_kws={'label': 'Z-score'})
        g.figure.suptitle(f'Top {len(zscore)} significant genes', y=1.02)

        return self._save_figure(g.figure, "top_genes_heatmap")

    # ------------------------------------------------------------------
    # Per-comparison figures
    # ------------------------------------------------------------------

    def _plot_volcano(self, name: str) -> Optional[List[str]]:
        """Volcano plot with cutoff lines at the significance thresholds."""
        df = self.annotated[name].dropna(subset=['padj']).copy()
        if len(df) == 0:
            self.logger.warning(f"Skipping volcano for {name} - no tested genes")
            return None

        lfc_cutoff = self.config["lfc_cutoff"]
        padj_cutoff = self.config["padj_cutoff"]
        df['neg_log10_padj'] = -np.log10(df['padj'].clip(lower=1e-300))

        fig, ax = plt.subplots(figsize=self.config["figsize"]["volcano"])
        colors = {'ns': 'lightgray', 'up': '#E74C3C', 'down': '#3498DB'}
        labels = {'ns': 'Not Significant', 'up': 'Up', 'down': 'Down'}
        for direction, color in colors.items():
            subset = df[df['direction'] == direction]
            ax.scatter(subset['log2FC'], subset['neg_log10_padj'],
                       c=color, alpha=0.6, s=15, label=labels[direction])

        ax.axhline(y=-np.log10(padj_cutoff), color='gray', linestyle='--', alpha=0.5)
        ax.axvline(x=lfc_cutoff, color='gray', linestyle='--', alpha=0.5)
        ax.axvline(x=-lfc_cutoff, color='gray', linestyle='--', alpha=0.5)

        top = df[df['significant']].nsmallest(self.config["label_top_genes"], 'padj')
        for _, row in top.iterrows():
            ax.annotate(row['symbol'], (row['log2FC'], row['neg_log10_padj']),
                        fontsize=8, ha='center', va='bottom')

        n_up = (df['direction'] == 'up').sum()
        n_down = (df['direction'] == 'down').sum()
        ax.text(0.02, 0.98, f'Up: {n_up}\nDown: {n_down}',
                transform=ax.transAxes, verticalalignment='top',
                fontsize=10, bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

        ax.set_xlabel('log2 Fold Change')
        ax.set_ylabel('-log10 Adjusted P-value')
        ax.set_title(f'Volcano: {name}')
        ax.legend(loc='upper right')

        return self._save_figure(fig, f"volcano_{name}")

    def _plot_ma(self, name: str) -> Optional[List[str]]:
        """Mean expression vs log2 fold change."""
        df = self.annotated[name]
        df = df[df['baseMean'] > 0]
        if len(df) == 0:
            return None

        lfc_cutoff = self.config["lfc_cutoff"]
        fig, ax = plt.subplots(figsize=self.config["figsize"]["ma"])
        ns = df[~df['significant']]
        sig = df[df['significant']]
        ax.scatter(ns['baseMean'], ns['log2FC'], c='lightgray', s=10, alpha=0.6, label='Not Significant')
        ax.scatter(sig['baseMean'], sig['log2FC'], c='#E74C3C', s=12, alpha=0.8, label='Significant')

        ax.set_xscale('log')
        ax.axhline(y=0, color='black', linewidth=0.8)
        ax.axhline(y=lfc_cutoff, color='gray', linestyle='--', alpha=0.5)
        ax.axhline(y=-lfc_cutoff, color='gray', linestyle='--', alpha=0.5)

        ax.set_xlabel('Mean of normalized counts')
        ax.set_ylabel('log2 Fold Change')
        ax.set_title(f'MA plot: {name}')
        ax.legend(loc='upper right')

        return self._save_figure(fig, f"ma_{name}")

    def _plot_venn(self) -> Optional[List[str]]:
        """Overlap of significant genes between pairwise comparisons."""
        pairwise = [c['name'] for c in self.comparisons if c.get('kind') == 'pairwise']
        if len(pairwise) not in (2, 3):
            self.logger.warning(f"Skipping Venn diagram - {len(pairwise)} pairwise comparisons")
            return None

        self.logger.info("Generating Venn diagram...")
        sets = [
            set(self.annotated[name].loc[self.annotated[name]['significant'], 'gene_id'])
            for name in pairwise
        ]

        fig, ax = plt.subplots(figsize=self.config["figsize"]["venn"])
        if len(sets) == 2:
            venn2(sets, set_labels=tuple(pairwise), ax=ax)
        else:
            venn3(sets, set_labels=tuple(pairwise), ax=ax)
        ax.set_title('Significant genes across pairwise comparisons')

        return self._save_figure(fig, "venn_pairwise")

    def _plot_enrichment(self, name: str) -> Optional[List[str]]:
        """Top enriched terms for one comparison."""
        results = self.enrichment.get(name)
        if results is None or len(results) == 0:
            self.logger.info(f"Skipping enrichment plot for {name} - no terms")
            return None

        top = (results.sort_values('padj')
               .drop_duplicates('term_name')
               .head(self.config["top_terms_plot"])
               .reset_index(drop=True))
        top['neg_log10_padj'] = -np.log10(top['padj'].clip(lower=1e-300))
        top['term_short'] = top['term_name'].apply(
            lambda x: x[:50] + '...' if len(str(x)) > 50 else x
        )

        fig, ax = plt.subplots(figsize=self.config["figsize"]["enrichment"])
        sns.barplot(data=top, x='neg_log10_padj', y='term_short', hue='gene_list',
                    dodge=False, palette={'up': '#E74C3C', 'down': '#3498DB', 'all': '#7F8C8D'},
                    ax=ax)
        for i, (_, row) in enumerate(top.iterrows()):
            ax.text(row['neg_log10_padj'] + 0.05, i, f"({row['gene_count']})", va='center', fontsize=8)

        ax.set_xlabel('-log10 Adjusted P-value')
        ax.set_ylabel('')
        ax.set_title(f'Top enriched terms: {name}')
        plt.tight_layout()

        return self._save_figure(fig, f"enrichment_{name}")

    def run(self) -> Dict[str, Any]:
        """Generate all visualizations."""
        generated_figures = []
        skipped_figures = []

        figure_functions = [
            ("pca", self._plot_pca),
            ("sample_distances", self._plot_sample_distances),
            ("top_genes_heatmap", self._plot_heatmap),
            ("venn_pairwise", self._plot_venn),
        ]
        for comp in self.comparisons:
            name = comp['name']
            figure_functions += [
                (f"volcano_{name}", lambda n=name: self._plot_volcano(n)),
                (f"ma_{name}", lambda n=name: self._plot_ma(n)),
                (f"enrichment_{name}", lambda n=name: self._plot_enrichment(n)),
            ]

        for name, func in figure_functions:
            result = func()
            if result:
                generated_figures.extend(result)
            else:
                skipped_figures.append(name)

        self.logger.info("Visualization Complete:")
        self.logger.info(f"  Generated: {len(generated_figures)} files")
        self.logger.info(f"  Skipped: {len(skipped_figures)}")

        return {
            "figures_generated": generated_figures,
            "skipped_figures": skipped_figures,
            "total_generated": len(generated_figures)
        }

    def validate_outputs(self) -> bool:
        """Validate visualization outputs."""
        if not self.figures_dir.exists():
            self.logger.error("Figures directory not created")
            return False

        fmt = self.config["figure_format"][0]
        if not list(self.figures_dir.glob(f"*.{fmt}")):
            self.logger.warning(f"No {fmt} figures generated")

        return True
