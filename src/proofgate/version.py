"""Version information for proofgate."""

__version__ = "0.3.0"
