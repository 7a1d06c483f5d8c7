"""Vigil — community moderation decision engine.

Reduces independent streams of community signals (reports, labeler
annotations, mute lists) to one explainable moderation action per target.
"""

__version__ = "0.3.0"
