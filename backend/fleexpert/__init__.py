"""fleexpert: conversation sync and offline proof portfolio for TEF/TCF preparation."""

__version__ = "0.1.0"
