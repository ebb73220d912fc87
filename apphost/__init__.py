"""apphost: run an installed documentation app template against a project."""

__version__ = "0.1.0"
