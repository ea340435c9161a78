from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

ERROR_PREFIX_PATTERN = re.compile(r"^(error|fatal):", re.IGNORECASE)
EMPTY_OUTPUT_MESSAGE = "Brain provider returned empty output"


@dataclass(slots=True)
class ParsedResponse:
    has_error: bool
    output: str
    error_message: str | None = None
    metadata: dict[str, Any] | None = None


class ResponseParser:
    """Turns raw provider stdout into content, metadata and an error flag.

    Plain text is the normal case (`--output-format text`). A JSON object is
    kept verbatim as content and exposed as metadata, unless it carries an
    error marker or a `result` field.
    """

    @staticmethod
    def _load_json_object(raw: str) -> dict[str, Any] | None:
        if not (raw.startswith("{") and raw.endswith("}")):
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return payload if isinstance(payload, dict) else None

    @staticmethod
    def _embedded_error(payload: dict[str, Any]) -> str | None:
        if payload.get("is_error") is True:
            detail = payload.get("result") or payload.get("error") or "unknown error"
            return str(detail)
        error = payload.get("error")
        if isinstance(error, str) and error.strip():
            return error.strip()
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, str) and message.strip():
                return message.strip()
        return None

    def parse(self, raw_output: str | None) -> ParsedResponse:
        output = (raw_output or "").strip()
        if not output:
            return ParsedResponse(has_error=True, output="", error_message=EMPTY_OUTPUT_MESSAGE)

        if ERROR_PREFIX_PATTERN.match(output):
            return ParsedResponse(has_error=True, output=output, error_message=output)

        payload = self._load_json_object(output)
        if payload is None:
            return ParsedResponse(has_error=False, output=output)

        embedded = self._embedded_error(payload)
        if embedded is not None:
            return ParsedResponse(
                has_error=True,
                output=output,
                error_message=embedded,
                metadata=payload,
            )

        result = payload.get("result")
        content = result.strip() if isinstance(result, str) and result.strip() else output
        return ParsedResponse(has_error=False, output=content, metadata=payload)
