"""
Stage 4: Differential Expression Gene (DEG) Analysis

Loads Salmon abundances, aggregates transcripts to genes, removes low-count
genes and fits a negative binomial GLM per gene with PyDESeq2 (default) or
R DESeq2 via rpy2.

Two fits share the same filtered count table:
- design ~group: pairwise comparisons between knockdown variants and control
- design ~treatment: pooled knockdown vs control

Input:
- samples.csv: sample_id, group, treatment
- quant_manifest.csv: From Stage 3 (sample_id, quant_file)
- tx2gene.csv: transcript -> gene table (optional, mygene lookup otherwise)

Output:
- gene_counts.csv, gene_tpm.csv: Gene-level abundance (all genes)
- filtered_counts.csv: Counts after low-count filtering
- normalized_counts.csv, size_factors.csv: Median-of-ratios normalization
- vst_counts.csv: Variance-stabilized expression (blind)
- deg_<comparison>_results.csv: Wald test results per comparison
- comparisons.json: Comparison definitions
- meta_stage4_deg.json: Execution metadata
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats

from ..utils.base_stage import BaseStage
from ..utils.expression import (
    comparison_name,
    filter_low_counts,
    load_quant_matrix,
    load_tx2gene,
    manifest_from_frame,
    pairwise_comparisons,
    strip_version,
    summarize_to_genes,
)

# rpy2 imports
try:
    import rpy2.robjects as ro
    from rpy2.robjects import pandas2ri
    from rpy2.robjects.packages import importr
    from rpy2.robjects.conversion import localconverter
    HAS_RPY2 = True
except ImportError:
    HAS_RPY2 = False

# (factor, numerator, denominator)
Comparison = Tuple[str, str, str]

RESULT_COLUMNS = [
    "gene_id", "baseMean", "log2FC", "lfcSE", "stat", "pvalue", "padj",
    "log2FC_shrunk", "lfcSE_shrunk",
]


class DEGStage(BaseStage):
    """Stage for DESeq2-based differential expression analysis."""

    ENGINES = ("pydeseq2", "deseq2_r")

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "de_engine": "pydeseq2",
            "tx2gene": "tx2gene.csv",  # Relative to input dir, or absolute
            "comparisons": None,  # [[factor, numerator, denominator], ...]; None = automatic
            "pooled_comparison": True,
            "use_lfc_shrinkage": True,
            "fit_type": "parametric",
            "cooks_filter": True,
            "independent_filter": True,
        }
        super().__init__("stage4_deg", input_dir, output_dir, config, default_config)

        self.sheet = None
        self.quant_manifest: Optional[pd.DataFrame] = None

    def validate_inputs(self) -> bool:
        """Validate sample sheet, quantification outputs and design."""
        self.sheet = self.load_sample_sheet()
        self.quant_manifest = self.load_csv("quant_manifest.csv")

        self.sheet.check_manifest(self.quant_manifest["sample_id"])

        for path in self.quant_manifest["quant_file"]:
            if not Path(path).exists():
                self.logger.error(f"quant.sf not found: {path}")
                return False

        engine = self.config["de_engine"]
        if engine not in self.ENGINES:
            self.logger.error(f"Unknown de_engine '{engine}' (choose from {self.ENGINES})")
            return False
        if engine == "deseq2_r" and not HAS_RPY2:
            self.logger.error("rpy2 not installed. Install with: pip install rpy2")
            return False

        groups = self.sheet.levels("group")
        if self.config["reference_group"] not in groups:
            self.logger.error(
                f"Reference group '{self.config['reference_group']}' not in groups {groups}"
            )
            return False

        treatments = set(self.sheet.levels("treatment"))
        if not set(self.config["treatment_levels"]).issubset(treatments):
            self.logger.error(
                f"Treatment levels {self.config['treatment_levels']} not all in {treatments}"
            )
            return False

        self.logger.info(f"Groups: {groups}")
        self.logger.info(f"Treatments: {sorted(treatments)}")
        return True

    # ------------------------------------------------------------------
    # Abundance loading
    # ------------------------------------------------------------------

    def _resolve_tx2gene(self, transcripts: pd.Index) -> Optional[pd.Series]:
        """Load the configured tx2gene table, or look transcripts up with mygene."""
        configured = self.config.get("tx2gene")
        if configured:
            path = Path(configured)
            if not path.is_absolute():
                path = self.input_dir / path
            if path.exists():
                self.logger.info(f"Loading transcript->gene map from {path.name}")
                return load_tx2gene(path)

        self.logger.info("No tx2gene table - querying mygene for transcript->gene mapping...")
        try:
            import mygene
            mg = mygene.MyGeneInfo()
            query_ids = list(dict.fromkeys(strip_version(transcripts)))
            results = mg.querymany(
                query_ids, scopes='ensembl.transcript', fields='ensembl.gene',
                species=self.config["organism"], verbose=False
            )

            mapping = {}
            for r in results:
                ensembl = r.get('ensembl')
                if isinstance(ensembl, list):
                    ensembl = ensembl[0]
                if isinstance(ensembl, dict) and 'gene' in ensembl:
                    mapping[str(r['query'])] = ensembl['gene']

            self.logger.info(f"Mapped {len(mapping)}/{len(query_ids)} transcripts to genes")
            if not mapping:
                self.logger.warning("mygene mapped no transcripts. Analyzing transcripts directly.")
                return None
            return pd.Series(mapping, name="gene_id")
        except Exception as e:
            self.logger.warning(f"mygene transcript lookup failed: {e}. Analyzing transcripts directly.")
            return None

    def _load_gene_tables(self) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """Gene-level (counts, TPM) in sample sheet order."""
        manifest = manifest_from_frame(
            self.quant_manifest.set_index("sample_id").loc[self.sheet.sample_ids].reset_index(),
            "quant_file"
        )

        tx_counts = load_quant_matrix(manifest, "NumReads")
        tx_tpm = load_quant_matrix(manifest, "TPM")
        self.logger.info(f"Loaded {len(tx_counts)} transcripts x {tx_counts.shape[1]} samples")

        tx2gene = self._resolve_tx2gene(tx_counts.index)
        if tx2gene is None:
            gene_counts, gene_tpm = tx_counts, tx_tpm
            gene_counts.index.name = gene_tpm.index.name = "gene_id"
        else:
            gene_counts = summarize_to_genes(tx_counts, tx2gene)
            gene_tpm = summarize_to_genes(tx_tpm, tx2gene)
            self.logger.info(f"Aggregated to {len(gene_counts)} genes")

        # Salmon estimated counts are fractional
        gene_counts = gene_counts.round().astype(int)
        return gene_counts, gene_tpm

    # ------------------------------------------------------------------
    # Comparisons
    # ------------------------------------------------------------------

    def _comparisons(self) -> List[Dict[str, str]]:
        """Comparison definitions: explicit config, or pairwise groups + pooled."""
        explicit = self.config.get("comparisons")
        if explicit:
            defs = []
            for factor, numerator, denominator in explicit:
                if factor not in ("group", "treatment"):
                    raise ValueError(f"Comparison factor must be 'group' or 'treatment', got '{factor}'")
                defs.append({"factor": factor, "numerator": numerator,
                             "denominator": denominator, "kind": "custom"})
        else:
            defs = [
                {"factor": "group", "numerator": num, "denominator": den, "kind": "pairwise"}
                for num, den in pairwise_comparisons(
                    self.sheet.levels("group"), self.config["reference_group"]
                )
            ]
            if self.config["pooled_comparison"]:
                treated, reference = self.config["treatment_levels"]
                defs.append({"factor": "treatment", "numerator": treated,
                             "denominator": reference, "kind": "pooled"})

        for d in defs:
            d["name"] = comparison_name(d["numerator"], d["denominator"])
        return defs

    def _reference(self, factor: str) -> str:
        if factor == "group":
            return self.config["reference_group"]
        return self.config["treatment_levels"][1]

    def _ordered_design(self, factor: str) -> pd.DataFrame:
        """Design column as a categorical with the reference level first."""
        design = self.sheet.design_frame()[[factor]].copy()
        reference = self._reference(factor)
        levels = [reference] + [lvl for lvl in self.sheet.levels(factor) if lvl != reference]
        design[factor] = pd.Categorical(design[factor], categories=levels)
        return design

    # ------------------------------------------------------------------
    # Engines
    # ------------------------------------------------------------------

    @staticmethod
    def _standardize(res: pd.DataFrame) -> pd.DataFrame:
        res = res.rename(columns={'log2FoldChange': 'log2FC'})
        if 'stat' not in res.columns:
            res['stat'] = res['log2FC'] / res['lfcSE'].replace(0, np.nan)
        return res[['baseMean', 'log2FC', 'lfcSE', 'stat', 'pvalue', 'padj']]

    def _run_pydeseq2(
        self,
        counts: pd.DataFrame,
        factor: str,
        comparisons: List[Comparison],
        with_vst: bool = False
    ) -> Dict[str, Any]:
        """Fit one design with PyDESeq2 and extract every comparison on it."""
        design = self._ordered_design(factor)
        inference = DefaultInference(n_cpus=self.config["threads"])

        self.logger.info(f"Fitting PyDESeq2 model: ~ {factor}")
        dds = DeseqDataSet(
            counts=counts.T,  # PyDESeq2 expects samples x genes
            metadata=design,
            design=f"~{factor}",
            fit_type=self.config["fit_type"],
            inference=inference,
            quiet=True,
        )
        dds.deseq2()

        coefficients = list(dds.varm["LFC"].columns)
        self.logger.info(f"Model coefficients: {coefficients}")

        results = {}
        for fac, numerator, denominator in comparisons:
            name = comparison_name(numerator, denominator)
            self.logger.info(f"Wald test: {name}")

            ds = DeseqStats(
                dds,
                contrast=[fac, numerator, denominator],
                alpha=self.config["padj_cutoff"],
                cooks_filter=self.config["cooks_filter"],
                independent_filter=self.config["independent_filter"],
                inference=inference,
                quiet=True,
            )
            ds.summary()
            res = self._standardize(ds.results_df.copy())

            res['log2FC_shrunk'] = np.nan
            res['lfcSE_shrunk'] = np.nan
            coef = self._shrinkage_coefficient(coefficients, fac, numerator, denominator)
            if coef:
                try:
                    self.logger.info(f"Applying LFC shrinkage on {coef}...")
                    ds.lfc_shrink(coeff=coef)
                    res['log2FC_shrunk'] = ds.results_df['log2FoldChange']
                    res['lfcSE_shrunk'] = ds.results_df['lfcSE']
                except Exception as e:
                    self.logger.warning(f"LFC shrinkage failed for {name}: {e}. Keeping unshrunk LFC only.")

            results[name] = res

        normalized = pd.DataFrame(
            np.asarray(dds.layers["normed_counts"]).T, index=counts.index, columns=counts.columns
        )
        size_factors = pd.Series(
            np.asarray(dds.obs["size_factors"]), index=counts.columns, name="size_factor"
        )

        vst = None
        if with_vst:
            self.logger.info("Computing blind variance-stabilizing transform...")
            dds.vst(use_design=False)
            vst = pd.DataFrame(
                np.asarray(dds.layers["vst_counts"]).T, index=counts.index, columns=counts.columns
            )

        return {"results": results, "normalized": normalized,
                "size_factors": size_factors, "vst": vst}

    def _shrinkage_coefficient(
        self,
        coefficients: List[str],
        factor: str,
        numerator: str,
        denominator: str
    ) -> Optional[str]:
        """Model coefficient matching a comparison, if it is one (vs. the reference)."""
        if not self.config["use_lfc_shrinkage"] or denominator != self._reference(factor):
            return None

        for candidate in (f"{factor}[T.{numerator}]", f"{factor}_{numerator}_vs_{denominator}"):
            if candidate in coefficients:
                return candidate

        self.logger.warning(f"No model coefficient for {numerator} vs {denominator}; skipping shrinkage")
        return None

    def _run_deseq2_r(
        self,
        counts: pd.DataFrame,
        factor: str,
        comparisons: List[Comparison],
        with_vst: bool = False
    ) -> Dict[str, Any]:
        """Fit one design with R DESeq2 via rpy2."""
        self.logger.info("Initializing R environment...")
        base = importr('base')
        deseq2 = importr('DESeq2')
        bioc_generics = importr('BiocGenerics')
        summarized = importr('SummarizedExperiment')

        design = self._ordered_design(factor)
        converter = ro.default_converter + pandas2ri.converter

        with localconverter(converter):
            counts_r = ro.conversion.py2rpy(counts.astype(int))
            meta_r = ro.conversion.py2rpy(design)

        self.logger.info(f"Fitting DESeq2 model: ~ {factor}")
        dds = deseq2.DESeqDataSetFromMatrix(
            countData=counts_r,
            colData=meta_r,
            design=ro.Formula(f"~ {factor}")
        )
        dds = deseq2.DESeq(dds, fitType=self.config["fit_type"])

        result_names = list(deseq2.resultsNames(dds))
        self.logger.info(f"Available coefficients: {result_names}")

        def to_pandas(r_obj) -> pd.DataFrame:
            with localconverter(converter):
                return ro.conversion.rpy2py(base.as_data_frame(r_obj))

        results = {}
        for fac, numerator, denominator in comparisons:
            name = comparison_name(numerator, denominator)
            self.logger.info(f"Wald test: {name}")

            res = deseq2.results(
                dds,
                contrast=ro.StrVector([fac, numerator, denominator]),
                alpha=self.config["padj_cutoff"],
                cooksCutoff=self.config["cooks_filter"],
                independentFiltering=self.config["independent_filter"]
            )
            res_df = self._standardize(to_pandas(res))
            res_df.index = counts.index

            res_df['log2FC_shrunk'] = np.nan
            res_df['lfcSE_shrunk'] = np.nan
            coef = self._shrinkage_coefficient(result_names, fac, numerator, denominator)
            if coef:
                try:
                    self.logger.info(f"Applying apeglm LFC shrinkage on {coef}...")
                    ro.r('if (!requireNamespace("apeglm", quietly = TRUE)) stop("apeglm not installed")')
                    shrunk = to_pandas(deseq2.lfcShrink(dds, coef=coef, type="apeglm"))
                    res_df['log2FC_shrunk'] = shrunk['log2FoldChange'].values
                    res_df['lfcSE_shrunk'] = shrunk['lfcSE'].values
                except Exception as e:
                    self.logger.warning(f"apeglm shrinkage failed for {name}: {e}. Keeping unshrunk LFC only.")

            results[name] = res_df

        normalized = to_pandas(bioc_generics.counts(dds, normalized=True))
        normalized.index, normalized.columns = counts.index, counts.columns
        size_factors = pd.Series(
            np.asarray(bioc_generics.sizeFactors(dds)), index=counts.columns, name="size_factor"
        )

        vst = None
        if with_vst:
            self.logger.info("Computing blind variance-stabilizing transform...")
            vsd = deseq2.varianceStabilizingTransformation(dds, blind=True)
            vst = to_pandas(summarized.assay(vsd))
            vst.index, vst.columns = counts.index, counts.columns

        return {"results": results, "normalized": normalized,
                "size_factors": size_factors, "vst": vst}

    # ------------------------------------------------------------------
    # Main
    # ------------------------------------------------------------------

    def _save_gene_table(self, df: pd.DataFrame, filename: str) -> None:
        table = df.copy()
        table.index.name = "gene_id"
        self.save_csv(table.reset_index(), filename)

    def run(self) -> Dict[str, Any]:
        """Execute DEG analysis."""
        gene_counts, gene_tpm = self._load_gene_tables()
        self._save_gene_table(gene_counts, "gene_counts.csv")
        self._save_gene_table(gene_tpm, "gene_tpm.csv")

        min_count = self.config["min_count"]
        min_samples = self.config["min_samples"]
        filtered = filter_low_counts(gene_counts, min_count, min_samples)
        self.logger.info(
            f"After filtering (>= {min_count} counts in >= {min_samples} samples): "
            f"{len(filtered)}/{len(gene_counts)} genes"
        )
        self._save_gene_table(filtered, "filtered_counts.csv")

        comparisons = self._comparisons()
        fit = self._run_pydeseq2 if self.config["de_engine"] == "pydeseq2" else self._run_deseq2_r

        # Group fit always runs: it provides normalization and the VST
        factors = ["group"] + (["treatment"] if any(c["factor"] == "treatment" for c in comparisons) else [])

        all_results: Dict[str, pd.DataFrame] = {}
        normalized = size_factors = vst = None
        for factor in factors:
            factor_comparisons = [
                (c["factor"], c["numerator"], c["denominator"])
                for c in comparisons if c["factor"] == factor
            ]
            fitted = fit(filtered, factor, factor_comparisons, with_vst=(factor == "group"))
            all_results.update(fitted["results"])
            if factor == "group":
                normalized, size_factors, vst = fitted["normalized"], fitted["size_factors"], fitted["vst"]

        self._save_gene_table(normalized, "normalized_counts.csv")
        self._save_gene_table(vst, "vst_counts.csv")
        self.save_csv(size_factors.rename_axis("sample_id").reset_index(), "size_factors.csv")

        summary = {}
        for comp in comparisons:
            name = comp["name"]
            res = all_results[name].copy()
            res.index.name = "gene_id"
            res = res.reset_index()[RESULT_COLUMNS]
            self.save_csv(res, f"deg_{name}_results.csv")

            comp["n_tested"] = int(res["padj"].notna().sum())
            comp["shrunk"] = bool(res["log2FC_shrunk"].notna().any())
            summary[name] = {
                "genes": len(res),
                "padj_below_cutoff": int((res["padj"] < self.config["padj_cutoff"]).sum()),
            }
            self.logger.info(f"  {name}: {summary[name]['padj_below_cutoff']} genes with padj < {self.config['padj_cutoff']}")

        self.save_json(comparisons, "comparisons.json")

        self.logger.info("DEG Analysis Complete:")
        self.logger.info(f"  Genes quantified: {len(gene_counts)}")
        self.logger.info(f"  Genes after filtering: {len(filtered)}")
        self.logger.info(f"  Comparisons: {[c['name'] for c in comparisons]}")

        return {
            "de_engine": self.config["de_engine"],
            "genes_quantified": len(gene_counts),
            "genes_after_filter": len(filtered),
            "min_count": min_count,
            "min_samples": min_samples,
            "comparisons": [c["name"] for c in comparisons],
            "comparison_summary": summary,
        }

    def validate_outputs(self) -> bool:
        """Validate DEG outputs."""
        required_files = [
            "gene_counts.csv",
            "filtered_counts.csv",
            "normalized_counts.csv",
            "vst_counts.csv",
            "comparisons.json",
        ]
        for filename in required_files:
            if not (self.output_dir / filename).exists():
                self.logger.error(f"Missing output file: {filename}")
                return False

        filtered = pd.read_csv(self.output_dir / "filtered_counts.csv", index_col=0)
        for comp in self._comparisons():
            path = self.output_dir / f"deg_{comp['name']}_results.csv"
            if not path.exists():
                self.logger.error(f"Missing results for {comp['name']}")
                return False
            if len(pd.read_csv(path)) != len(filtered):
                self.logger.error(f"{comp['name']} does not cover every filtered gene")
                return False

        return True
