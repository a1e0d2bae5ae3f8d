"""Scoring, confidence and the analysis run pipeline."""

from deppulse.analyzers.confidence import compute_confidence
from deppulse.analyzers.pipeline import AnalysisPipeline
from deppulse.analyzers.scorer import Scorer, calculate_score

__all__ = ["AnalysisPipeline", "Scorer", "calculate_score", "compute_confidence"]
