"""Reset and recovery of nodes whose session was invalidated."""
