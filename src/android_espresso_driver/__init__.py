"""Espresso-backed WebDriver session driver for Android."""

__version__ = "0.1.0"
