"""compliance-rt command-line interface."""
