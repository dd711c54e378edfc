"""moodmap — geospatial emotion analytics and real-time broadcast engine."""

__version__ = "0.1.0"
