"""
Core package init for facecluster.

Incremental face clustering over a photo library: quality gating, root
discovery, membership assignment and identity propagation.
"""

__all__ = [
    "clustering",
    "pipeline",
    "recognition",
    "storage",
    "concurrency",
    "config",
    "io_utils",
    "references",
    "report",
    "types",
]
