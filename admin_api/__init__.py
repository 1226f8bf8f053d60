"""Admin panel API exposing the system self-update installer."""

__version__ = "0.1.0"
