"""
Devbox - isolated, credentialed development containers.

This distribution carries the network egress control layer: per-container
networks, DNS filtering sidecars, and profile-driven allow/block rules.
"""

__version__ = "0.4.0"
__author__ = "Devbox Team"
