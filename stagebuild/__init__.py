"""stagebuild - Layered build-cache pipeline for native executables.

This package compiles a native program in two passes (dependencies first,
against a placeholder program, then the real sources) and packages the
single resulting executable into a minimal runtime image.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
