"""ipshield: IP reputation answers over DNS."""

__version__ = "0.1.0"
