"""
API Routes for the Lead Engagement Engine.
"""

from . import engine

__all__ = ["engine"]
