"""
YouTube to MP3 gateway
"""

__version__ = "1.0.0"
