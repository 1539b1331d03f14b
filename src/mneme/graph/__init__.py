"""Entity and relationship extraction."""

from mneme.graph.extractor import ExtractionOptions, Extractor, calculate_importance

__all__ = ["ExtractionOptions", "Extractor", "calculate_importance"]
