"""
IR Playbook Result Normalizer

Turns captured remote output into a canonical value, or a classified error.
"""

import json
import logging
from typing import Any, Iterator, Optional, Tuple

from ..core.config import NormalizerConfig
from ..core.exceptions import ExecutionError, ParseError
from ..executor import RawOutput

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 200

MAX_SPAN_ATTEMPTS = 8

CLOSERS = {"{": "}", "[": "]"}


def structured_spans(text: str, limit: int = MAX_SPAN_ATTEMPTS) -> Iterator[str]:
    """
    Yield candidate structured-data spans in text.

    Each candidate runs from an opening brace or bracket to the last
    matching closer of the same kind. Openers are tried left to right, so
    a bracketed log prefix does not hide the payload that follows it.
    """
    attempts = 0
    for start, char in enumerate(text):
        if attempts >= limit:
            return
        if char not in CLOSERS:
            continue
        end = text.rfind(CLOSERS[char])
        if end <= start:
            continue
        attempts += 1
        yield text[start:end + 1]


def find_structured_span(text: str) -> Optional[str]:
    """Return the first candidate span in text, or None."""
    return next(structured_spans(text), None)


def _excerpt(text: str) -> str:
    text = text.strip()
    if len(text) <= EXCERPT_LENGTH:
        return text
    return text[:EXCERPT_LENGTH] + "..."


class ResultNormalizer:
    """
    Multi-layer result unwrapping.

    Handles the success/failure envelope emitted by the remote command, the
    `value` wrapper added by the remoting transport, and JSON that was
    encoded more than once. Every unwrapping loop is bounded.
    """

    def __init__(self, config: Optional[NormalizerConfig] = None):
        self.config = config or NormalizerConfig()

    def normalize(self, raw: RawOutput) -> Any:
        """
        Normalize raw output.

        Returns:
            The canonical value (None for an empty successful result)

        Raises:
            ExecutionError: The remote side or the process reported failure
            ParseError: Output could not be reduced to a canonical value
        """
        stdout = (raw.stdout or "").strip()
        succeeded = raw.exit_code == 0

        if not stdout:
            if succeeded:
                return None
            raise ExecutionError(
                raw.stderr.strip() or f"Remote command exited with code {raw.exit_code}",
                exit_code=raw.exit_code,
                stderr=_excerpt(raw.stderr or ""),
            )

        spans = list(structured_spans(stdout))
        if not spans:
            if succeeded:
                return stdout
            raise ExecutionError(
                raw.stderr.strip() or stdout or f"Remote command exited with code {raw.exit_code}",
                exit_code=raw.exit_code,
                stderr=_excerpt(raw.stderr or stdout),
            )

        parsed = self._parse_spans(spans, raw, stdout)

        is_envelope, value = self._open_envelope(parsed, raw)
        if not is_envelope and not succeeded:
            raise ExecutionError(
                raw.stderr.strip() or f"Remote command exited with code {raw.exit_code}",
                exit_code=raw.exit_code,
                stderr=_excerpt(raw.stderr or stdout),
            )

        return self.unwrap(value)

    def _parse_spans(self, spans: list, raw: RawOutput, stdout: str) -> Any:
        error = None
        for span in spans:
            try:
                return json.loads(span)
            except RecursionError:
                error = ParseError(
                    "Structured output is nested too deeply",
                    stage="envelope",
                    excerpt=_excerpt(span),
                )
                break
            except ValueError as e:
                logger.debug(f"Candidate span rejected: {e}")
                error = ParseError(
                    f"Malformed structured output: {e}",
                    stage="envelope",
                    excerpt=_excerpt(span),
                )

        if raw.exit_code != 0:
            raise ExecutionError(
                raw.stderr.strip() or f"Remote command exited with code {raw.exit_code}",
                exit_code=raw.exit_code,
                stderr=_excerpt(raw.stderr or stdout),
            )
        raise error

    def _open_envelope(self, parsed: Any, raw: RawOutput) -> Tuple[bool, Any]:
        cfg = self.config
        if not isinstance(parsed, dict) or not isinstance(parsed.get(cfg.success_key), bool):
            return False, parsed

        if parsed[cfg.success_key]:
            return True, parsed.get(cfg.data_key)

        message = parsed.get(cfg.error_key) or "Remote procedure reported failure"
        details = parsed.get(cfg.details_key)
        logger.debug(f"Remote failure envelope: {message}")
        raise ExecutionError(
            str(message),
            exit_code=raw.exit_code,
            stderr=_excerpt(raw.stderr) if raw.stderr else None,
            remote_details=str(details) if details is not None else None,
        )

    def _is_transport_wrapper(self, value: Any) -> bool:
        return (
            isinstance(value, dict)
            and "value" in value
            and any(f in value for f in self.config.transport_fields)
        )

    @staticmethod
    def _looks_structured(value: Any) -> bool:
        if not isinstance(value, str):
            return False
        text = value.strip()
        return text.startswith("{") or text.startswith("[")

    def unwrap(self, value: Any) -> Any:
        """
        Strip transport wrappers and decode JSON-in-string layers.

        Both kinds run interleaved until neither applies. Each kind may
        apply at most max_unwrap_depth times.
        """
        limit = self.config.max_unwrap_depth
        unwraps = 0
        decodes = 0

        while True:
            if self._is_transport_wrapper(value):
                if unwraps >= limit:
                    raise ParseError(
                        f"Transport wrapper nesting exceeds {limit}",
                        stage="unwrap",
                        excerpt=_excerpt(json.dumps(value, default=str)),
                    )
                value = value["value"]
                unwraps += 1
                continue

            if self._looks_structured(value):
                try:
                    decoded = json.loads(value.strip())
                except RecursionError:
                    raise ParseError(
                        "Encoded JSON is nested too deeply",
                        stage="decode",
                        excerpt=_excerpt(value),
                    )
                except ValueError:
                    break
                if decodes >= limit:
                    raise ParseError(
                        f"Encoded JSON nesting exceeds {limit}",
                        stage="decode",
                        excerpt=_excerpt(value),
                    )
                value = decoded
                decodes += 1
                continue

            break

        return value
