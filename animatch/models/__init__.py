"""
AniMatch — ORM model registry.

Importing every model here ensures that Alembic (and any other tool that
inspects ``Base.metadata``) discovers all tables automatically.
"""

from animatch.models.document import Document

__all__ = [
    "Document",
]
