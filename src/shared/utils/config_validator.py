"""
Configuration validation utilities.

Provides helpers for reading typed environment variables with clear error messages.
"""

import os
from typing import Optional


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def require_env(name: str, description: Optional[str] = None) -> str:
    """
    Require an environment variable to be set.

    Args:
        name: Environment variable name
        description: Optional description of what the variable is used for

    Returns:
        The value of the environment variable

    Raises:
        ConfigurationError: If the environment variable is not set or empty
    """
    value = os.getenv(name)

    if not value:
        desc_msg = f" ({description})" if description else ""
        raise ConfigurationError(
            f"Missing required environment variable: {name}{desc_msg}\n"
            f"Please set {name} in your .env file or environment."
        )

    return value


def validate_int_env(name: str, default: Optional[int] = None, min_value: Optional[int] = None,
                     max_value: Optional[int] = None) -> int:
    """
    Validate an integer environment variable.

    Args:
        name: Environment variable name
        default: Default value if not set
        min_value: Minimum allowed value
        max_value: Maximum allowed value

    Returns:
        The validated integer value

    Raises:
        ConfigurationError: If the value is invalid
    """
    value_str = os.getenv(name)

    if not value_str:
        if default is None:
            raise ConfigurationError(f"Missing required integer environment variable: {name}")
        return default

    try:
        value = int(value_str)
    except ValueError:
        raise ConfigurationError(
            f"Invalid integer value for {name}: '{value_str}'\n"
            f"Expected an integer value."
        )

    _check_bounds(name, value, min_value, max_value)
    return value


def validate_float_env(name: str, default: Optional[float] = None, min_value: Optional[float] = None,
                       max_value: Optional[float] = None) -> float:
    """
    Validate a numeric environment variable that may carry a fraction.

    Raises:
        ConfigurationError: If the value is missing without default or not a number
    """
    value_str = os.getenv(name)

    if not value_str:
        if default is None:
            raise ConfigurationError(f"Missing required numeric environment variable: {name}")
        return default

    try:
        value = float(value_str)
    except ValueError:
        raise ConfigurationError(
            f"Invalid numeric value for {name}: '{value_str}'\n"
            f"Expected a number such as 2 or 1.5."
        )

    _check_bounds(name, value, min_value, max_value)
    return value


def validate_bool_env(name: str, default: bool = False) -> bool:
    """
    Validate a boolean environment variable.

    Accepts: true, false, yes, no, on, off, 1, 0 (case-insensitive)

    Args:
        name: Environment variable name
        default: Default value if not set

    Returns:
        The validated boolean value

    Raises:
        ConfigurationError: If the value is invalid
    """
    value_str = os.getenv(name)

    if not value_str:
        return default

    value_lower = value_str.lower()

    if value_lower in ("true", "yes", "on", "1"):
        return True
    elif value_lower in ("false", "no", "off", "0"):
        return False
    else:
        raise ConfigurationError(
            f"Invalid boolean value for {name}: '{value_str}'\n"
            f"Expected one of: true, false, yes, no, on, off, 1, 0"
        )


def _check_bounds(name, value, min_value, max_value) -> None:
    if min_value is not None and value < min_value:
        raise ConfigurationError(
            f"Value for {name} ({value}) is below minimum allowed value ({min_value})"
        )

    if max_value is not None and value > max_value:
        raise ConfigurationError(
            f"Value for {name} ({value}) exceeds maximum allowed value ({max_value})"
        )
