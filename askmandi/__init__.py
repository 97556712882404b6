"""Ask Mandi: natural-language questions over Indian mandi commodity prices."""

__version__ = "1.0.0"
