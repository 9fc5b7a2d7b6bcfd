"""screendoc: periodic screen capture for documenting user sessions."""

__version__ = "0.1.0"
