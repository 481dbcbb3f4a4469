"""Cloud provider integration for buildfarm."""

from buildfarm.cloud.node_pools import (
    NodePoolBusyError,
    NodePoolClient,
    NodePoolError,
    OperationStatus,
)

__all__ = ["NodePoolBusyError", "NodePoolClient", "NodePoolError", "OperationStatus"]
