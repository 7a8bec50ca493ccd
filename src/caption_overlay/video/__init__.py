"""Video composition module.

Computes canvas geometry for a captioned video and turns it into an
FFmpeg filter graph.
"""

from caption_overlay.video.composition import (
    CompositionPlan,
    LayoutBox,
    plan_composition,
)
from caption_overlay.video.filtergraph import (
    Filter,
    FilterGraph,
    FilterStage,
    build_filter_graph,
    sanitize_text,
)

__all__ = [
    "CompositionPlan",
    "LayoutBox",
    "plan_composition",
    "Filter",
    "FilterGraph",
    "FilterStage",
    "build_filter_graph",
    "sanitize_text",
]
