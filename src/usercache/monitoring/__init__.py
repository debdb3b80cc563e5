"""Logging configuration for the user cache."""
