"""
asvinfer: Amplicon sequence variant inference for paired-end Illumina amplicon reads.

Filters read pairs, learns run-specific error rates, denoises each read
direction into exact sequence variants, merges pairs and removes chimeras.
"""

__version__ = "0.1.0"
__author__ = "Josh Walker"
__email__ = "joshowalker@yahoo.com"

from .pipeline import AmpliconPipeline, main as asvinfer_main

__all__ = ["AmpliconPipeline", "asvinfer_main", "__version__"]
