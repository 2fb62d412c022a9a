"""procwarden — process supervision and health for dual-runtime containers."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("procwarden")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
