"""Manage named API credential profiles and activate them globally or per shell."""

__version__ = "0.1.0"
