"""
RNA-seq DE Pipeline Stages

Each stage handles one step of the analysis, in fixed order:
- Stage 1: Read Acquisition (SRA Toolkit)
- Stage 2: QC & Trimming (FastQC, Trimmomatic)
- Stage 3: Quantification (Salmon)
- Stage 4: Differential Expression (PyDESeq2 / DESeq2)
- Stage 5: Annotation & Significance Calling
- Stage 6: Pathway Enrichment (Enrichr, GSEA prerank)
- Stage 7: Visualization
"""

from .stage1_acquisition import AcquisitionStage
from .stage2_qc import QCTrimStage
from .stage3_quant import QuantificationStage
from .stage4_deg import DEGStage
from .stage5_annotation import AnnotationStage
from .stage6_enrichment import EnrichmentStage
from .stage7_visualization import VisualizationStage

__all__ = [
    "AcquisitionStage",
    "QCTrimStage",
    "QuantificationStage",
    "DEGStage",
    "AnnotationStage",
    "EnrichmentStage",
    "VisualizationStage",
]
