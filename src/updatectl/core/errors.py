# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Exception hierarchy for updatectl."""


class UpdatectlError(Exception):
    """Base class for all updatectl errors."""


class ConfigurationError(UpdatectlError):
    """Invalid runner or update configuration. Raised before any API or engine call."""


class EngineError(UpdatectlError):
    """The update engine could not be installed, launched or understood."""


class HttpRequestError(UpdatectlError):
    """A hosting-platform request failed.

    Attributes:
        status_code: HTTP status code, or None for transport-level failures
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
