"""
Nara - spoiler-safe voice copilot for audiobooks

Listens for a wake phrase while an audiobook plays, pauses playback, answers
the listener's question from the chapters they have already heard, speaks the
answer and resumes the book.
"""

__version__ = "1.0.0"
__author__ = "Nara Team"

from .cli import main

__all__ = ["main"]
