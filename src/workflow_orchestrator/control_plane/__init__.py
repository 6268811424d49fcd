"""
workflow-orchestrator - control plane

File: src/workflow_orchestrator/control_plane/__init__.py

Purpose
- Runtime supervision: safety gating (``safety``), spend tracking (``resources``),
  budget fitting (``scheduler``), failure remediation (``recovery``), level-barrier
  execution (``engine``) and the pipeline facade (``orchestrator``).

Import components from their modules; this package does not re-export them
because ``persistence`` depends on ``control_plane.safety``.
"""
