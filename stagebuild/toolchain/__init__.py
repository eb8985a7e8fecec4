"""Toolchain integration.

This module handles:
- Language profiles (stub shape, build command, output layout)
- Stub program generation and removal
- Running the toolchain and capturing logs
- The two-pass compiler stage
"""

from stagebuild.toolchain.languages import RUST, LanguageProfile, get_language

__all__ = ["RUST", "LanguageProfile", "get_language"]

# Submodules (compiler, runner, stub) are imported directly to avoid cycles
