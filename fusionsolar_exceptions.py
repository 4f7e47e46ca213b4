"""Exceptions raised by the FusionSolar client."""


class FusionSolarError(Exception):
    """Base class for all FusionSolar errors."""


class ConfigurationError(FusionSolarError):
    """Unusable key material or cipher setup. Never retried."""


class AuthenticationError(FusionSolarError):
    """Login rejected, bad subdomain, or session could not be re-established."""


class TransportError(FusionSolarError):
    """Network, timeout, HTTP status or decoding failure."""


class DataIntegrityError(FusionSolarError):
    """A response was missing a field the API is expected to always return."""
