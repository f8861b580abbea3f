"""Branching Trail: branching idea trees over an LLM backend."""

__version__ = "0.1.0"
