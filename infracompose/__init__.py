"""infracompose — declarative infrastructure composition engine."""

__version__ = "0.1.0"
