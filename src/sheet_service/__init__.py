"""
Sheet Music Conversion Service package.

This module provides a FastAPI application that turns uploaded images of
sheet music into MusicXML scores. The HTTP app lives in `sheet_service.webapi`.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
