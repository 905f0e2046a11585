# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Exceptions raised while reading and validating xlgen configuration.

Kept apart from the schema so callers can catch configuration problems
without importing pydantic.
"""


class ConfigError(Exception):
    """Base for all configuration errors."""


class ConfigLoadError(ConfigError):
    """A config file (YAML or config.json) could not be read or parsed."""


class ConfigValidationError(ConfigError):
    """
    The file parsed, but its content is not a valid configuration: missing
    fields, wrong types, out-of-range values, unknown keys, or options that
    contradict each other (for example more return sequences than beams).
    """
