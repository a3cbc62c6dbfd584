"""Realm: bounded tool-using agent loops with context compression."""

__version__ = "0.4.0"
