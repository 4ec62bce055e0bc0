"""Optional DuckDB copy of relay messages."""

from .service import MessageArchiveService

__all__ = ["MessageArchiveService"]
