"""Inputs to learning: change sources and analysis oracles."""

from .git import GitChangeSource
from .oracle import AnalysisOracle, FileAnalysis, LexicalOracle

__all__ = ["GitChangeSource", "AnalysisOracle", "FileAnalysis", "LexicalOracle"]
