"""procdaemon - forking daemon supervisor."""

__version__ = "0.1.0"
