"""
TBSS Orchestration

Modules:
    stage_gate: Marker-based stage completion checks
    layout: Paths and markers of a run directory
    subjects: Subject artifacts and design consistency
    context: Validated, immutable run configuration
    pipeline: Stage sequencer (copy, tbss_1-4, randomise, fill)
    designs: Per-design subject resolution and job submission
    run_tbss / run_designs: Command-line entry points
"""

from neurotbss.analysis.tbss.context import TBSSContext, build_context
from neurotbss.analysis.tbss.designs import submit_designs
from neurotbss.analysis.tbss.pipeline import TBSSPipeline
from neurotbss.analysis.tbss.stage_gate import StageGate, is_stage_complete
