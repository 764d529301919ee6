"""Hashing helpers: request fingerprints and content-addressed graph ids."""

from __future__ import annotations

import hashlib
import json

from compilerhub.models import CompileOptions, JobMode


def fingerprint(language: str, source_code: str, options: CompileOptions, mode: JobMode = JobMode.COMPILE) -> str:
    """SHA-256 over (language, exact source text, options, mode).

    The source is hashed byte-for-byte: whitespace changes produce a new fingerprint.
    """
    material = json.dumps(
        {
            "language": language,
            "source": source_code,
            "options": options.model_dump(mode="json"),
            "mode": mode.value,
        },
        sort_keys=True,
        ensure_ascii=False,
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def content_id(*parts: str, length: int = 16) -> str:
    """Short stable id derived from parts (blake2b, hex)."""
    h = hashlib.blake2b(digest_size=max(4, length // 2))
    for part in parts:
        h.update(part.encode("utf-8"))
        h.update(b"\x00")
    return h.hexdigest()
