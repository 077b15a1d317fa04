"""
JSON utilities for recovering structured data from LLM responses.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

FENCE_PATTERN = re.compile(r'```(?:json)?\s*\n?([\s\S]*?)```')


class JSONExtractionError(Exception):
    """Raised when a strategy cannot recover JSON from a response."""
    pass


@dataclass
class ParseResult:
    """Outcome of one extraction attempt: either a decoded value or an error."""
    strategy: str
    value: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _decode(strategy: str, text: str) -> ParseResult:
    try:
        return ParseResult(strategy=strategy, value=json.loads(text))
    except (json.JSONDecodeError, TypeError) as e:
        return ParseResult(strategy=strategy, error=JSONExtractionError(f'{strategy}: {e}'))


def parse_direct(response: str) -> ParseResult:
    """Decode the trimmed response as-is."""
    return _decode('direct', response.strip())


def parse_fenced_block(response: str) -> ParseResult:
    """Decode the contents of the first fenced code block."""
    match = FENCE_PATTERN.search(response.strip())
    if not match:
        return ParseResult(strategy='fenced_block', error=JSONExtractionError('fenced_block: no code fence found'))
    return _decode('fenced_block', match.group(1).strip())


def parse_brace_span(response: str) -> ParseResult:
    """Decode the span between the first '{' and the last '}'."""
    text = response.strip()
    start, end = text.find('{'), text.rfind('}')
    if start == -1 or end <= start:
        return ParseResult(strategy='brace_span', error=JSONExtractionError('brace_span: no object span found'))
    return _decode('brace_span', text[start:end + 1])


PARSE_STRATEGIES: List[Callable[[str], ParseResult]] = [parse_direct, parse_fenced_block, parse_brace_span]


def extract_json(response: str, strategies: Optional[List[Callable[[str], ParseResult]]] = None) -> ParseResult:
    """Run each strategy in order and return the first successful result.

    Args:
        response: Raw LLM response
        strategies: Ordered attempt functions (defaults to PARSE_STRATEGIES)

    Returns:
        The first successful ParseResult, or a failed one carrying every error
    """
    errors = []
    for strategy in strategies or PARSE_STRATEGIES:
        result = strategy(response or '')
        if result.ok:
            return result
        errors.append(str(result.error))
    return ParseResult(strategy='none', error=JSONExtractionError('; '.join(errors)))
