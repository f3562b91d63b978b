"""Campus2Career interview turn engine."""

__version__ = "0.1.0"
