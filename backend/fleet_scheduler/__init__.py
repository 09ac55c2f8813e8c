"""Vehicle reservation scheduler: admission, booking lifecycle and shared rides."""

__version__ = "1.0.0"
