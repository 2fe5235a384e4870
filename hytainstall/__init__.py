"""HyTa Installer – game version discovery, download and patch engine."""

__version__ = "0.1.0"
