# robustreg/core/__init__.py
"""Core computational modules for robustreg."""
from . import covariance, fe, linalg

__all__ = ["covariance", "fe", "linalg"]
