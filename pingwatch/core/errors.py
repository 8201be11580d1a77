"""
Engine exceptions.
"""


class ConfigError(ValueError):
    """A settings mutation was rejected; engine state is unchanged."""


class ResolutionError(Exception):
    """The public network identity could not be resolved this cycle."""
