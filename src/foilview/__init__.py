"""Stage control core for the foilview focus-search application."""

__version__ = "0.3.0"
