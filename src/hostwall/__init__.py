"""hostwall - default-deny host firewall compiler and boot-time persistence."""

__version__ = "1.0.0"
