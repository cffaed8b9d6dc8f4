import re
import unicodedata
from typing import Any

import structlog

logger = structlog.get_logger()

REDACTED = "[REDACTED]"
MAX_FIELD_LENGTH = 300


class LLMGuardrails:
    """
    Input guardrails for prompts built from cloud-supplied strings.

    Resource names, tag values and advisor text are controlled by whoever can
    create resources, so they are treated as untrusted before entering a prompt.
    """

    # Patterns commonly used in prompt injection
    INJECTION_PATTERNS = [
        r"ignore previous instructions",
        r"ignore all previous",
        r"system prompt",
        r"you are now",
        r"forget what you",
        r"disregard the above",
        r"=== ?section",
        r"<script>",
        r"javascript:",
    ]

    @classmethod
    def sanitize_input(cls, data: Any) -> Any:
        """
        Recursively sanitizes input data to strip prompt injection attempts.
        Non-string scalars pass through unchanged.
        """
        if isinstance(data, str):
            # Normalize Unicode (homoglyph attacks)
            normalized = unicodedata.normalize("NFKC", data)

            # Collapse whitespace so "i g n o r e" cannot bypass the patterns
            collapsed = re.sub(r"\s+", "", normalized).lower()
            for pattern in cls.INJECTION_PATTERNS:
                clean_pattern = re.sub(r"(\s|\\s|\?)+", "", pattern).lower()
                if clean_pattern in collapsed:
                    logger.warning("prompt_injection_obfuscated_form_detected", pattern=pattern)
                    return REDACTED

            # Single line, bounded length
            sanitized = re.sub(r"[\r\n\t]+", " ", normalized).strip()
            if len(sanitized) > MAX_FIELD_LENGTH:
                sanitized = sanitized[:MAX_FIELD_LENGTH] + "..."
            return sanitized

        if isinstance(data, list):
            return [cls.sanitize_input(item) for item in data]
        if isinstance(data, tuple):
            return tuple(cls.sanitize_input(item) for item in data)
        if isinstance(data, dict):
            return {cls.sanitize_input(k): cls.sanitize_input(v) for k, v in data.items()}
        return data
