from mneme.consolidation.compressor import Compressor, group_by_category, template_summary

__all__ = ["Compressor", "group_by_category", "template_summary"]
