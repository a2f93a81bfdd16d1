"""Integration tests: the CLI driven in-process and as a subprocess."""
