"""Knowledge plane: AI-free static analysis of submitted source trees."""

from compile_orchestrator.knowledge_plane.static_analyzer import (
    CRATE_DEPENDENCIES,
    FileMetadata,
    ProjectAnalysis,
    analyze,
    analyze_text,
)

__all__ = [
    "CRATE_DEPENDENCIES",
    "FileMetadata",
    "ProjectAnalysis",
    "analyze",
    "analyze_text",
]
