"""Pipeline orchestration module.

This module handles:
- Pipeline file parsing
- Running the fingerprint, compile, extract and assemble stages in order
- Artifact location, extraction and manifest generation
- Run records
"""

from stagebuild.builds.models import BuildRecord

__all__ = ["BuildRecord"]

# Lazy imports for submodules to avoid circular imports
# Access via stagebuild.builds.service, etc.
