"""Error taxonomy for certificate generation.

Each error names the precondition that failed (entity, backend, or storage
path) so callers can report a structured message instead of a traceback.
"""


class NotFoundError(Exception):
    """Raised when a transaction, user, property, or investment set is missing."""

    def __init__(self, entity: str, identifier: str, message: str | None = None):
        self.entity = entity
        self.identifier = identifier
        super().__init__(message or f"{entity.capitalize()} {identifier} not found")


class RenderFailure(Exception):
    """Raised by a rendering backend; recovered by the fallback chain."""

    def __init__(self, backend: str, message: str):
        self.backend = backend
        super().__init__(f"{backend}: {message}")


class AllBackendsFailedError(RenderFailure):
    """Raised when every configured backend failed for one document."""

    def __init__(self, failures: list[RenderFailure]):
        self.failures = failures
        detail = "; ".join(str(f) for f in failures) or "no backends configured"
        super().__init__("strategy", f"all rendering backends failed ({detail})")


class UploadError(Exception):
    """Raised when the object store rejects a certificate upload."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"Certificate upload failed: {message}")


class StampFetchFailure(Exception):
    """A stamp image could not be fetched. Never escapes the renderer."""

    def __init__(self, url: str, message: str):
        self.url = url
        self.message = message
        super().__init__(f"Stamp fetch failed for {url}: {message}")


class PersistenceWarning(UserWarning):
    """The investment mirror could not be resolved; the transaction still saved."""


class LinkIssueError(Exception):
    """Raised when the object store cannot issue a link for a stored document."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"Certificate link could not be issued: {message}")
