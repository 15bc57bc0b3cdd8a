"""Confidant: LLM gateway for an AI-character chat backend."""

__version__ = "0.1.0"
