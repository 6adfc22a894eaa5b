"""keyward: central management of SSH authorized_keys across a fleet."""

__version__ = "1.0.0"
