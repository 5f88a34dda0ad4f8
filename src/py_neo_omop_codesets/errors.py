# Copyright (c) 2025-2026 Gowtham Adamane Rao. All Rights Reserved.
#
# Licensed under the Prosperity Public License 3.0.0 (the "License").
# You may not use this file except in compliance with the License.
# You may obtain a copy of the License in the LICENSE file at the root
# of this repository, or at: https://prosperitylicense.com/versions/3.0.0
#
# Commercial use beyond a 30-day trial requires a separate license.
"""
Exceptions raised by the code set engine.

InvalidArgumentError and NotFoundError describe caller mistakes and are never
retried. UpstreamError wraps failures of the vocabulary or persistence store.
"""


class CodeSetEngineError(Exception):
    """Base class for all engine errors."""


class InvalidArgumentError(CodeSetEngineError):
    """Raised for malformed input: empty anchor sets, short search terms, unknown build types or domains."""


class NotFoundError(CodeSetEngineError):
    """Raised when an anchor concept or a saved code set does not exist for the caller."""


class UpstreamError(CodeSetEngineError):
    """Raised when the vocabulary or persistence store cannot be reached or fails a query."""
