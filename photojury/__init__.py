"""photojury: resumable batch evaluation of photo competition entries."""

__version__ = "0.1.0"
