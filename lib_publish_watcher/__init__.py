"""Local development loop for library packages.

This package provides a daemon that watches library sources, rebuilds them on
change and republishes them to a local package registry.
"""

__version__ = "0.1.0"
