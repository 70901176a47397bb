"""Version information for the flash arbitrage engine."""

__version__ = "0.3.0"
__version_info__ = tuple(int(i) for i in __version__.split("."))
