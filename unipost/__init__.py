"""Uni-post storage core: a social-content graph persisted in a versioned blob store."""

__version__ = "0.1.0"
