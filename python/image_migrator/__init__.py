"""
Resumable container image migration between registries.
"""

__version__ = "0.1.0"
