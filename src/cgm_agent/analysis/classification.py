"""Parse the ``[CLASSIFICATION: green|yellow|red]`` prefix of analyzer output."""

from __future__ import annotations

import re

from cgm_agent.models import Classification

_CLASSIFICATION_RE = re.compile(
    r"^\s*\[CLASSIFICATION:\s*(green|yellow|red)\]\s*\n?",
    re.IGNORECASE,
)


def parse_classification(raw_text: str | None) -> tuple[str, str | None]:
    """Split analyzer output into ``(cleaned_text, classification)``.

    The tag is only recognised at the very start of the text.  Without a
    tag the text is returned unchanged with ``None``.
    """
    if raw_text is None or not raw_text.strip():
        return raw_text or "", None

    match = _CLASSIFICATION_RE.match(raw_text)
    if match is None:
        return raw_text, None
    return raw_text[match.end():].lstrip(), match.group(1).lower()


def is_valid_classification(value: str | None) -> bool:
    return value in {c.value for c in Classification}
