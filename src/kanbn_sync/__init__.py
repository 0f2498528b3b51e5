"""Mirror GitHub issues onto Kanbn boards."""

__version__ = "0.1.0"
