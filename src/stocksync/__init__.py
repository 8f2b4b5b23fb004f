"""Stock sync connector: accounting desktop inventory <-> commerce platform."""

__version__ = "1.0.0"
