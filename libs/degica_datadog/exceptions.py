"""Errors raised by the Datadog integration."""


class DatadogError(Exception):
    """Base class for errors raised by this package."""


class InvalidArgumentError(DatadogError, ValueError):
    """Raised when a metric is submitted with a bad timestamp or metric kind."""


class MissingCredentialError(DatadogError):
    """Raised when the Datadog API is used without an API key."""


class ConfigurationError(DatadogError):
    """Raised when the environment describes an unusable agent setup."""
