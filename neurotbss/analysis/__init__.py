"""
Neurotbss Analysis Module

Submodules:
    tbss: Resumable TBSS pipeline, design enumeration and CLIs
    stats: FSL randomise helpers
"""
