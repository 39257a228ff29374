"""kegworks — install prebuilt binaries from formulas and keep their services alive."""

__version__ = "0.1.0"
