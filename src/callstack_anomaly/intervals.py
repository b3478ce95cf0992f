"""Loading call intervals from JSON and JSON Lines files.

Accepted inputs:
- a JSON array of interval objects
- a JSON object with an "intervals" array
- JSON Lines, one interval object per line (blank lines ignored)

Each interval object has the fields of CallInterval: start, length, depth and
symbol. Symbols may be given as integers or as hexadecimal strings ("0x4005d0").
"""

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from callstack_anomaly.models import CallInterval


logger = logging.getLogger(__name__)


def _parse_symbol(value):
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError:
            raise ValueError(f'Invalid symbol address: {value!r}') from None
    return value


def parse_interval(data: dict) -> CallInterval:
    """Build a CallInterval from one decoded JSON object.

    Raises:
        ValueError: If the object is not a valid interval
    """
    if not isinstance(data, dict):
        raise ValueError(f'Expected an interval object, got {type(data).__name__}')
    data = dict(data)
    if 'symbol' in data:
        data['symbol'] = _parse_symbol(data['symbol'])
    try:
        return CallInterval(**data)
    except ValidationError as e:
        raise ValueError(f'Invalid interval {data}: {e}') from e


def load_intervals(path: str | Path) -> list[CallInterval]:
    """Read every interval of a JSON or JSON Lines file.

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: If the content cannot be parsed
    """
    path = Path(path)
    with open(path, encoding='utf-8') as f:
        content = f.read()

    try:
        document = json.loads(content)
    except json.JSONDecodeError:
        document = None

    if isinstance(document, list):
        items = document
    elif isinstance(document, dict):
        # A whole file holding one interval object is a one-line JSON Lines file
        items = document['intervals'] if 'intervals' in document else [document]
    else:
        items = _load_json_lines(content, path)

    intervals = [parse_interval(item) for item in items]
    logger.info(f'Loaded {len(intervals)} intervals from {path}')
    return intervals


def _load_json_lines(content: str, path: Path) -> list:
    items = []
    for line_number, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            items.append(json.loads(line))
        except json.JSONDecodeError as e:
            raise ValueError(f'{path}:{line_number}: invalid JSON: {e}') from e
    return items
