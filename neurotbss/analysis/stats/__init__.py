"""
Statistical Analysis Utilities

Provides helpers for FSL statistical tools:
    randomise_wrapper: randomise command building, input validation, result summaries
"""

from neurotbss.analysis.stats.randomise_wrapper import build_randomise_command, summarize_results
