"""
Error taxonomy.

Cache errors never leave the cache layer. Render failures leave the engine
and are turned into a redirect by the dispatcher.
"""


class DynamicRenderError(Exception):
    pass


class CacheError(DynamicRenderError):
    """Backing store unreachable or too slow. Absorbed inside RenderCache."""


class RenderFailure(DynamicRenderError):
    """
    A render did not produce a complete document.

    `reason` is one of "timeout", "navigation", "extraction", "shutdown".
    """

    reason = "render"

    def __init__(self, url: str, message: str = ""):
        self.url = url
        super().__init__(message or f"{self.reason} failure rendering {url}")


class RenderTimeoutError(RenderFailure):
    reason = "timeout"


class RenderNavigationError(RenderFailure):
    reason = "navigation"


class RenderExtractionError(RenderFailure):
    reason = "extraction"


class RenderUnavailableError(RenderFailure):
    reason = "shutdown"


class BrowserClosedError(DynamicRenderError):
    """The shared browser was closed and will not be relaunched."""
