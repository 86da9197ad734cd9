"""
Bloom control plane - provisions, monitors and tears down a single ephemeral
compute instance on demand.
"""

__version__ = "0.1.0"
