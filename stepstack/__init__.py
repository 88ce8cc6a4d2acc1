"""stepstack: run build workflows as depth-first command expansion."""

__version__ = "0.1.0"
