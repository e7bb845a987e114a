"""Knowledge-base document ingestion: extraction, chunking, embedding and status tracking."""

__version__ = "1.0.0"
