"""procdaemon core components."""
