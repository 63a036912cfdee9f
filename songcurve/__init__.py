"""Song token trade reconstruction, price analytics and trade indexing."""

__version__ = "0.1.0"
