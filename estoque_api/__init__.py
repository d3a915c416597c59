"""Backend de estoque e solicitações de materiais de marketing."""

__version__ = "1.0.0"
