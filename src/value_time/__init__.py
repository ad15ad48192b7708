"""Local-first time and earnings tracker."""

__version__ = "0.3.0"
