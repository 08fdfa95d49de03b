"""
Features package — each sub-package encapsulates a self-contained feature.

Convention:
  features/<feature_name>/
    __init__.py      — public API re-exports
    models.py        — data models specific to this feature (if applicable)
    ...              — any other feature-specific modules

  backends/       — Backend Port, adapters and the auto-router
  orchestration/  — agent-planned execution waves
  verification/   — post-completion verification of beats
"""
