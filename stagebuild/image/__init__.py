"""Runtime image assembly.

This module handles:
- Base filesystem resolution (scratch, local tree/tarball, remote tarball)
- Runtime library installation from a package source
- Image staging, config and atomic publication
"""

from stagebuild.image.assembler import RuntimeImage, assemble_image

__all__ = ["RuntimeImage", "assemble_image"]
