from __future__ import annotations


class DatagenError(Exception):
    """Base class for every failure raised by the generation pipeline."""


class LoadTimeout(DatagenError):
    """The renderer never signaled readiness within its deadline."""


class RemoteCallFailure(DatagenError):
    """A control-API call failed, timed out, or the session disconnected."""


class PoolExhausted(DatagenError):
    """No session could be obtained from the worker pool."""


class PoolShuttingDown(PoolExhausted):
    """The worker pool is draining and refuses new leases."""


class ArtifactWriteFailure(DatagenError):
    """A frame, metadata, error or index document could not be persisted."""


class PoolInitializationFailure(DatagenError):
    """At least one renderer process could not be spawned at startup."""
