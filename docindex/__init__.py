"""Document indexing and retrieval engine for a retrieval-augmented-generation backend."""

__version__ = "1.0.0"
