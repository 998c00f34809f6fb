"""botdock - deploy, pair and supervise messaging bots."""

__version__ = "0.1.0"
