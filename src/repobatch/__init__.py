"""
repobatch: batch workflow orchestrator over repository directories.

Purpose
- Package root. Defines package-level metadata only.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
