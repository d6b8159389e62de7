"""Configuration management using msgspec Struct."""

import logging
from collections.abc import Mapping

import msgspec

MAX_KEYS_PER_CHAIN = 2**31


class Config(msgspec.Struct, frozen=True):
    """Library configuration using msgspec Struct."""

    # Logging
    log_level: str = "INFO"

    # Deterministic chain lookahead
    lookahead_size: int = 100
    lookahead_threshold: int = 33
    max_keys_per_chain: int = MAX_KEYS_PER_CHAIN

    # Encrypted chain key stretching
    pbkdf2_iterations: int = 480_000

    # Metrics settings
    metrics_host: str = "127.0.0.1"
    metrics_port: int = 8081

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.log_level.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got {self.log_level}")

        if self.lookahead_size < 1:
            raise ValueError(f"lookahead_size must be at least 1, got {self.lookahead_size}")

        if not 0 <= self.lookahead_threshold <= self.lookahead_size:
            raise ValueError(
                f"lookahead_threshold must be between 0 and lookahead_size, "
                f"got {self.lookahead_threshold}"
            )

        if not 1 <= self.max_keys_per_chain <= MAX_KEYS_PER_CHAIN:
            raise ValueError(
                f"max_keys_per_chain must be between 1 and {MAX_KEYS_PER_CHAIN}, "
                f"got {self.max_keys_per_chain}"
            )

        if self.pbkdf2_iterations < 1:
            raise ValueError(f"pbkdf2_iterations must be positive, got {self.pbkdf2_iterations}")

        if self.metrics_port < 1 or self.metrics_port > 65535:
            raise ValueError(f"metrics_port must be between 1 and 65535, got {self.metrics_port}")

    @property
    def normalized_log_level(self) -> str:
        """Return normalized uppercase log level."""
        return self.log_level.upper()


def get_config(overrides: Mapping[str, object] | None = None) -> Config:
    """Build a configuration from a mapping of overrides.

    Raises:
        ValueError: If a value has the wrong type or fails validation

    """
    try:
        config = msgspec.convert(dict(overrides or {}), Config)
    except msgspec.ValidationError as e:
        raise ValueError(f"Configuration validation error: {e}")

    return config


def setup_logging(log_level: str) -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
