"""FLUXWARDEN shared settings, logging and errors."""
