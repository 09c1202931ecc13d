# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Logging utilities for updatectl.

Provides consistent logging configuration, status glyphs, secret masking and
helper functions for formatted output throughout the codebase.

Core components (reconciler, host client, engine invoker) only ever call
logging.getLogger(__name__); configuration happens once, at the process
boundary, through setup_logging().
"""

import logging
import sys
from collections.abc import Iterable
from urllib.parse import quote

# ============================================================================
# Status Glyphs
# ============================================================================

CHECK = "✓"
CROSS = "✗"
ROCKET = "🚀"
GEAR = "⚙"
PACKAGE = "📦"
WARN = "⚠"

MASK = "***"


# ============================================================================
# Secret Masking
# ============================================================================


class SecretMaskingFilter(logging.Filter):
    """Replace registered secret values in log records with a mask.

    Each secret is masked verbatim and in its URL-encoded form, since tokens
    and organisation names also show up inside API and feed URLs.
    """

    def __init__(self, secrets: Iterable[str | None] = ()):
        super().__init__()
        self._secrets: set[str] = set()
        self.add(*secrets)

    def add(self, *secrets: str | None) -> None:
        for secret in secrets:
            if not secret or not secret.strip():
                continue
            # Appears in every branch name and author
            if secret.lower() == "dependabot":
                continue
            self._secrets.add(secret)
            self._secrets.add(quote(secret, safe=""))

    def mask(self, text: str) -> str:
        # Longest first
        for secret in sorted(self._secrets, key=len, reverse=True):
            text = text.replace(secret, MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if self._secrets:
            record.msg = self.mask(record.getMessage())
            record.args = None
        return True


# ============================================================================
# Logging Configuration
# ============================================================================


def setup_logging(
    level: int = logging.INFO,
    format_string: str | None = None,
    date_format: str | None = None,
    secrets: Iterable[str | None] = (),
) -> SecretMaskingFilter:
    """Configure logging for updatectl.

    Sets up the root logger with consistent formatting and installs a
    SecretMaskingFilter on every root handler.

    Args:
        level: Logging level (default: INFO)
        format_string: Custom format string (default: timestamp + level + message)
        date_format: Custom date format (default: ISO-like)
        secrets: Values to mask in all log output

    Returns:
        The installed filter, so more secrets can be registered later
    """
    if format_string is None:
        format_string = "%(asctime)s [%(levelname)s] %(message)s"

    if date_format is None:
        date_format = "%Y-%m-%d %H:%M:%S"

    logging.basicConfig(
        level=level,
        format=format_string,
        datefmt=date_format,
        stream=sys.stdout,
        force=True,
    )

    masking_filter = SecretMaskingFilter(secrets)
    for handler in logging.getLogger().handlers:
        handler.addFilter(masking_filter)

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)

    return masking_filter


# ============================================================================
# Output Helpers
# ============================================================================


def section(title: str, emoji: str = GEAR, logger: logging.Logger | None = None) -> None:
    """Log a section header.

    Args:
        title: Section title
        emoji: Glyph to prefix (default: gear)
        logger: Logger to use (default: root logger)
    """
    if logger is None:
        logger = logging.getLogger()

    logger.info("")
    logger.info("%s %s", emoji, title)
    logger.info("-" * 60)


def success(message: str, logger: logging.Logger | None = None) -> None:
    """Log a success message with checkmark."""
    if logger is None:
        logger = logging.getLogger()
    logger.info("%s %s", CHECK, message)


def error(message: str, logger: logging.Logger | None = None) -> None:
    """Log an error message with cross."""
    if logger is None:
        logger = logging.getLogger()
    logger.error("%s %s", CROSS, message)


def warn(message: str, logger: logging.Logger | None = None) -> None:
    """Log a warning message with warning glyph."""
    if logger is None:
        logger = logging.getLogger()
    logger.warning("%s %s", WARN, message)


def step(message: str, logger: logging.Logger | None = None) -> None:
    """Log a step/progress message with rocket."""
    if logger is None:
        logger = logging.getLogger()
    logger.info("%s %s", ROCKET, message)
