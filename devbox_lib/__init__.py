"""Secure interactive workspaces and setup pipelines for remote sandboxes."""

__version__ = "0.3.0"
