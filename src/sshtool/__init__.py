"""sshtool: run the same command on many hosts and summarize what came back."""

__version__ = "0.3.0"
