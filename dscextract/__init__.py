"""Walk dyld shared cache files, decode their records and rebuild image linkedit."""

__version__ = "0.1.0"