"""Pet Portraits: AI portrait generation and upscaling service."""

__version__ = "0.1.0"
