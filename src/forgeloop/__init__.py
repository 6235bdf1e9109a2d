"""forgeloop - fix-forward orchestration of iterative AI coding sessions."""

__version__ = "0.3.0"
