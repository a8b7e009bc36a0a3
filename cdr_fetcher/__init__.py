"""cdr-fetcher: download Microsoft Graph call records for a list of conference ids."""

__version__ = "0.1.0"

__all__ = ["__version__"]
