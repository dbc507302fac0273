from __future__ import annotations


class ChunkswapError(RuntimeError):
    """Base class for every failure the disk replacement workflow reports to an operator."""

    kind = "error"
    exit_code = 1

    def __init__(self, code: str, detail: str) -> None:
        super().__init__(f"{code}: {detail}")
        self.code = code
        self.detail = detail


class ConfigurationError(ChunkswapError):
    kind = "configuration"
    exit_code = 2


class PreconditionError(ChunkswapError):
    kind = "precondition"
    exit_code = 3


class NotFoundError(PreconditionError):
    pass


class ConcurrencyError(ChunkswapError):
    kind = "concurrency"
    exit_code = 4


class ValidationPolicyError(ChunkswapError):
    """The device or cluster state rejects this attempt; not a system fault."""

    kind = "validation"
    exit_code = 5


class DiskTooSmallError(ValidationPolicyError):
    pass


class DiskInUseError(ValidationPolicyError):
    pass


class SameDiskError(ValidationPolicyError):
    pass


class DiskNotEmptyError(ValidationPolicyError):
    pass


class ClusterUnhealthyError(ValidationPolicyError):
    pass


class RemoteExecutionError(ChunkswapError):
    kind = "remote"
    exit_code = 6

    def __init__(self, code: str, detail: str, *, host: str = "", exit_status: int | None = None) -> None:
        super().__init__(code, detail)
        self.host = host
        self.exit_status = exit_status


class RemoteUnavailableError(RemoteExecutionError):
    pass


class PersistenceError(ChunkswapError):
    kind = "persistence"
    exit_code = 7
