"""
workflow-orchestrator - package root

File: src/workflow_orchestrator/__init__.py

Purpose
- Dynamic workflow orchestration: complexity analysis, graph construction,
  safety-gated spawning, budget-aware scheduling, concurrent execution and
  failure recovery for multi-agent automation.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
