"""Turns a web-project git repository into an Android package."""

__version__ = "0.3.0"
