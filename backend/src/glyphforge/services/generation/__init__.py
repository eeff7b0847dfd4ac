"""SVG generation engine: request validation, model client, output sanitizer."""
