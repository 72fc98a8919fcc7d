"""Error taxonomy for the tracking client.

None of these are allowed to terminate the process. The orchestrator turns
them into a counter increment and a message in the client state.
"""

from __future__ import annotations


class GeoTrackError(Exception):
    """Base class for all client errors."""


class AuthenticationError(GeoTrackError):
    """Missing/invalid credentials or a rejected session request."""


class TransportError(GeoTrackError):
    """Network or HTTP failure while sending position records."""


class SourceError(GeoTrackError):
    """The position source failed to produce a fix."""


class ChannelError(GeoTrackError):
    """The streaming channel dropped or could not be opened."""


class ConfigError(GeoTrackError):
    """Configuration is malformed or out of range."""
