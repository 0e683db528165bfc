"""myterm: run an interactive shell behind pipes and stream its output."""

__version__ = "0.1.0"
