"""
compile-orchestrator — package root

File: src/compile_orchestrator/__init__.py
Last updated: 2026-10-17

Purpose
- Compile-as-a-service build orchestration engine for Anchor (Solana) programs.

Import boundary rules
- No side effects at import time (no config loading, no logging init).
- Heavy submodules (docker, anthropic) are only imported by the adapters that use them.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
