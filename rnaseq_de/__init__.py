"""
Knockdown RNA-seq Differential Expression Pipeline

A linear pipeline with 7 stages:
1. Acquisition (SRA Toolkit)
2. Quality Control & Trimming (FastQC, Trimmomatic)
3. Quantification (Salmon)
4. Differential Expression (PyDESeq2 / DESeq2)
5. Annotation & Significance Flagging
6. Enrichment (GO/KEGG/Reactome via gseapy)
7. Visualization

Each stage reads the previous stage's outputs and can be run independently.
"""

__version__ = "1.0.0"
__author__ = "BioInsight AI"

from .orchestrator import DEPipeline, create_sample_data

__all__ = ["DEPipeline", "create_sample_data"]
