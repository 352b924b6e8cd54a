from .base import ResponseBase
from .payments import (
    RunConfigOverrides,
    CheckStatusRequest,
    CheckStatusStarted,
    GatewayProgressRead,
    ProgressRead,
    FailedChunkRead,
    CheckStatusResultRead,
    CheckStatusRunRead,
)

__all__ = [
    # Base
    "ResponseBase",

    # Payment status checks
    "RunConfigOverrides",
    "CheckStatusRequest",
    "CheckStatusStarted",
    "GatewayProgressRead",
    "ProgressRead",
    "FailedChunkRead",
    "CheckStatusResultRead",
    "CheckStatusRunRead",
]
