"""ChatDelta - query several AI providers at once and connect their answers."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("chatdelta")
except PackageNotFoundError:
    # Package not installed (development mode without editable install)
    __version__ = "0.3.0"

__all__ = ["__version__"]
