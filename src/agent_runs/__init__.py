"""Agent run execution and outcome classification."""

__version__ = "0.1.0"
