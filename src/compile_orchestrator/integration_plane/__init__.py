"""Integration plane: per-build workspaces and output artifact classification."""

from compile_orchestrator.integration_plane.artifacts import ArtifactScan, handle_for, scan
from compile_orchestrator.integration_plane.workspace_manager import (
    BuildWorkspace,
    WorkspaceManager,
    locate_project_subdir,
    relocate_root_program,
)

__all__ = [
    "ArtifactScan",
    "BuildWorkspace",
    "WorkspaceManager",
    "handle_for",
    "locate_project_subdir",
    "relocate_root_program",
    "scan",
]
