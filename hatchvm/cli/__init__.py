"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import HatchModalCLI, main

__all__ = ['HatchModalCLI', 'main']
