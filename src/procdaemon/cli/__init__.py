"""procdaemon command line interface."""
