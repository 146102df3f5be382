"""Error taxonomy for the mint pipeline.

Every error carries the HTTP status the API answers with; the message is the
human-readable ``error`` string stored in a failed request's response body.
"""

from typing import Optional


class MintPipelineError(Exception):
    status_code = 500

    def __init__(self, message: str, *, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(MintPipelineError):
    status_code = 404


class ConflictError(MintPipelineError):
    status_code = 409


class InvalidTransitionError(ConflictError):
    pass


class InsufficientInventoryError(MintPipelineError):
    status_code = 409

    def __init__(self, requested: int, reserved: int):
        super().__init__(
            "Not enough NFTs available",
            details=f"requested={requested} reserved={reserved}",
        )
        self.requested = requested
        self.reserved = reserved


class TransientNetworkError(MintPipelineError):
    status_code = 503


class AssetCreationError(TransientNetworkError):
    def __init__(self, message: str, *, created: int, remaining: int):
        super().__init__(message, details=f"created={created} remaining={remaining}")
        self.created = created
        self.remaining = remaining


class OnChainFailureError(MintPipelineError):
    status_code = 400


class PersistenceError(MintPipelineError):
    status_code = 500


class InvalidRequestError(MintPipelineError):
    status_code = 400
