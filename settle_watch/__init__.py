"""Debounced directory watching.

This package watches a directory tree and reports each file once it has
stopped changing for a short quiescence window, instead of once per raw
filesystem event.
"""

__version__ = "0.1.0"
