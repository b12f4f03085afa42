"""Errors raised by the pricing policy calculator."""


class PricingPolicyError(Exception):
    """Base class for pricing policy errors."""


class ConfigurationError(PricingPolicyError):
    """Raised when a tiered policy does not cover the requested quantity."""


class InvalidInputError(PricingPolicyError, ValueError):
    """Raised when prices, quantities or tier lists are invalid."""


class PolicyDataError(PricingPolicyError):
    """Raised when raw policy records cannot be normalized."""


InvalidInput = InvalidInputError
