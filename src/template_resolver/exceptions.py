"""
Exceptions raised inside the template resolver.

None of these escape `TemplateResolver.find_template`; they mark failures
that the resolution chain converts into a fall-through to the next tier.
"""


class TemplateResolverError(Exception):
    """Base exception for template resolution errors."""
    pass


class TemplateRejectedError(TemplateResolverError):
    """Raised by a post-processing hook to reject a fetched template body."""
    pass


class ConfigurationError(TemplateResolverError):
    """Raised when the resolver is assembled with invalid settings."""
    pass
