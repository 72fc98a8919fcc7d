"""GeoTrack: location reporting client for Traccar servers."""

__version__ = "0.1.0"
