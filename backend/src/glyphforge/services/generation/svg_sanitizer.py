"""Content-safety filter for generated SVG markup.

Generated markup is untrusted: it is passed through an allowlist sanitizer
before being persisted. Scripts, event handler attributes, frames and embedded
objects never survive.
"""

import nh3

ALLOWED_TAGS = {
    "svg",
    "g",
    "defs",
    "title",
    "desc",
    "path",
    "rect",
    "circle",
    "ellipse",
    "line",
    "polyline",
    "polygon",
    "text",
    "tspan",
    "use",
    "linearGradient",
    "radialGradient",
    "stop",
    "clipPath",
    "mask",
    "symbol",
}

ALLOWED_ATTRIBUTES = {
    "*": {
        "id",
        "class",
        "fill",
        "fill-opacity",
        "fill-rule",
        "clip-rule",
        "clip-path",
        "mask",
        "stroke",
        "stroke-width",
        "stroke-linecap",
        "stroke-linejoin",
        "stroke-miterlimit",
        "stroke-dasharray",
        "stroke-dashoffset",
        "stroke-opacity",
        "opacity",
        "transform",
    },
    "svg": {"xmlns", "viewBox", "width", "height", "preserveAspectRatio", "version"},
    "path": {"d", "pathLength"},
    "rect": {"x", "y", "width", "height", "rx", "ry"},
    "circle": {"cx", "cy", "r"},
    "ellipse": {"cx", "cy", "rx", "ry"},
    "line": {"x1", "y1", "x2", "y2"},
    "polyline": {"points"},
    "polygon": {"points"},
    "text": {"x", "y", "dx", "dy", "text-anchor", "font-size", "font-family", "font-weight"},
    "tspan": {"x", "y", "dx", "dy"},
    "use": {"href", "x", "y", "width", "height"},
    "linearGradient": {"x1", "y1", "x2", "y2", "gradientUnits", "gradientTransform"},
    "radialGradient": {"cx", "cy", "r", "fx", "fy", "gradientUnits", "gradientTransform"},
    "stop": {"offset", "stop-color", "stop-opacity"},
    "clipPath": {"clipPathUnits"},
    "symbol": {"viewBox"},
}


def sanitize_svg(svg: str) -> str:
    """Return the SVG markup with everything outside the allowlist removed.

    Args:
        svg: Raw SVG markup from the generation engine

    Returns:
        Sanitized markup safe to store and serve
    """
    return nh3.clean(
        svg,
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRIBUTES,
        clean_content_tags={"script", "style", "iframe", "object", "embed"},
        url_schemes={"http", "https"},
        strip_comments=True,
        link_rel=None,
    )
