from __future__ import annotations

from .pyaileys import PyaileysSocket, PyaileysSocketFactory

__all__ = ["PyaileysSocket", "PyaileysSocketFactory"]
