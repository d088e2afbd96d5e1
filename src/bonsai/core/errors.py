"""Domain error taxonomy for the dispatch core."""

from __future__ import annotations


class BonsaiError(Exception):
    """Base for dispatch-core errors with a machine-readable code."""

    code = "BONSAI_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class ContentionError(BonsaiError):
    """Raised when another cycle or lock holder is already active."""

    code = "CONTENTION"


class StoreUnavailableError(BonsaiError):
    """Raised when the persisted store cannot be reached at all."""

    code = "STORE_UNAVAILABLE"


class TransitionError(BonsaiError):
    """Raised when a phase transition is not legal from the current state."""

    code = "ILLEGAL_TRANSITION"

    def __init__(self, message: str, *, item_id: str | None = None) -> None:
        super().__init__(message)
        self.item_id = item_id


class MissingArtifactError(TransitionError):
    """Raised when a transition's required upstream artifacts are absent."""

    code = "MISSING_ARTIFACT"

    def __init__(
        self, target: str, missing: tuple[str, ...], *, item_id: str | None = None
    ) -> None:
        names = ", ".join(missing)
        super().__init__(f"Cannot enter {target}: missing artifact(s) {names}", item_id=item_id)
        self.target = target
        self.missing = missing


class SealedRunError(BonsaiError):
    """Raised when a sealed run record would be mutated."""

    code = "RUN_SEALED"

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} is sealed")
        self.run_id = run_id


class PathEscapeError(BonsaiError):
    """Raised when a path resolves outside an item's isolated working copy."""

    code = "PATH_ESCAPE"

    def __init__(self, path: str, root: str) -> None:
        super().__init__(f"Path {path!r} resolves outside working copy {root!r}")
        self.path = path
        self.root = root


class TrunkProtectionError(BonsaiError):
    """Raised on any attempt to delete or force-move the trunk reference."""

    code = "TRUNK_PROTECTED"


class WorkerError(BonsaiError):
    """Raised when the worker process fails or returns unparseable output."""

    code = "WORKER_FAILED"
