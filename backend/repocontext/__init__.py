"""repocontext: retrieval of commits, file chunks and prior Q&A for repository questions."""

__version__ = "0.1.0"
