"""
Pipeline components for snowball distribution.

Contains the scoring engine and the domain reputation cache it reads from.
"""

__all__ = ["reputation", "scoring"]
