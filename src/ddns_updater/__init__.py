"""
DDNS Updater - report public IPv4/IPv6 addresses to DDNS providers.

This package periodically looks up the caller's public addresses and pushes
them to DDNS providers described by template-driven definition files.
"""

__version__ = "0.1.0"
__author__ = "DDNS Updater Contributors"
