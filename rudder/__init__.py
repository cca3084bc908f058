"""
.. include:: ../README.md
"""

__all__ = [
    "chart",
    "version",
    "values",
    "dependency",
    "manifest",
    "render",
    "hooks",
    "release",
    "storage",
    "cluster",
    "config",
    "context",
    "show",
    "exceptions",
]
