"""CLI module for plato."""
