"""Tolerant JSON extraction from CLI output."""

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

# Outermost object or array; CLIs sometimes print warnings around the JSON body
_JSON_BLOCK = re.compile(r"(\{[\s\S]*\}|\[[\s\S]*\])")


class CLIOutputError(ValueError):
    """CLI output did not contain parseable JSON."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


def parse_cli_json(raw: str, context: str) -> Any:
    """
    Extract and parse the JSON payload from raw CLI output.

    Args:
        raw: Full stdout of the command
        context: What was being fetched, used in error messages

    Returns:
        Parsed JSON value

    Raises:
        CLIOutputError: No JSON structure found, or it failed to parse
    """
    match = _JSON_BLOCK.search(raw or "")
    if not match:
        logger.warning(f"No JSON structure in {context} output: {raw!r:.200}")
        raise CLIOutputError(
            f"No valid JSON structure found for {context}. Raw output: {raw}", raw=raw or ""
        )

    if match.group(1) != raw.strip():
        logger.warning(f"Discarded non-JSON text around {context} output")

    try:
        return json.loads(match.group(1))
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse {context} as JSON: {e}")
        raise CLIOutputError(
            f"Failed to parse {context} as JSON. Error: {e}", raw=raw
        ) from e
