"""labfleet: Windows lab host resolution and remote fan-out."""

__version__ = "0.1.0"
