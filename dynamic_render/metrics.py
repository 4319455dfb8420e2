from dataclasses import dataclass


@dataclass(frozen=True)
class RenderResult:
    """
    Output of one successful render.

    Fields:
        html        : Serialized DOM, including the rendered marker tag.
        render_ms   : Wall time of the render call, slot wait included (ms).
    """
    html: str
    render_ms: int


@dataclass
class WarmupResult:
    """
    One row of a warm-up run: a single (path, user agent) request sent to a
    running service.

    Fields:
        url           : Full URL requested.
        agent         : Label of the User-Agent used, e.g. "googlebot".
        status        : HTTP status code if available (200, 302...).
        bytes_len     : Length of the response body in bytes (0 on failure).
        rendered      : True when the response carried the renderer marker header.
        cache         : Value of the X-Cache header ("HIT" / "MISS"), if any.
        crawler_class : Value of the X-Crawler-Type header, if any.
        render_ms     : Render duration parsed from Server-Timing, if any.
        ttl_s         : Total time to last byte (seconds).
        ttfb_s        : Time to first byte (seconds), if measurable.
        error_type    : Exception class name when the request failed.
    """
    url: str
    agent: str
    status: int | None
    bytes_len: int
    rendered: bool
    ttl_s: float
    ttfb_s: float | None
    error_type: str | None
    cache: str | None = None
    crawler_class: str | None = None
    render_ms: int | None = None
