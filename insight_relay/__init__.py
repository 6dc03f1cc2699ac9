"""Meeting insight relay: live meeting audio → streaming STT → incremental structured extraction."""

__version__ = "0.1.0"
