"""Deterministic request fingerprint used to detect idempotency-key misuse."""

import hashlib
import json


def compute_request_hash(prompt: str, style: str | None, model: str | None, privacy: bool) -> str:
    """Compute the SHA-256 fingerprint of the semantic request fields.

    The fields are serialized as canonical JSON (sorted keys, no insignificant
    whitespace) so logically identical requests always produce the same digest.

    Args:
        prompt: Sanitized prompt text
        style: Requested style
        model: Resolved model name
        privacy: Whether the result is private

    Returns:
        Hex-encoded SHA-256 digest (64 characters)
    """
    canonical = json.dumps(
        {
            "prompt": prompt,
            "style": style,
            "model": model,
            "privacy": bool(privacy),
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
