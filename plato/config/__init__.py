"""Configuration module for plato."""
