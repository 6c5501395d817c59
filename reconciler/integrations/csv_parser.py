import csv
import io
import logging
from typing import Dict, List

from ..services.ledger import HEADER_ALIASES, KEY_FIELD

logger = logging.getLogger(__name__)

REQUIRED_TRANSCRIPTION_FIELDS = {KEY_FIELD}

_ALIAS_TO_FIELD = {alias: name for name, aliases in HEADER_ALIASES.items() for alias in aliases}


def _field_name(header: str) -> str:
    header = (header or "").strip().lstrip("\ufeff")
    return _ALIAS_TO_FIELD.get(header, header)


def parse_transcription_csv(content: str) -> List[Dict[str, str]]:
    """Rows of an exported webhook / bank-transfer sheet keyed by ledger field name.

    Older exports use legacy headers (``patientId``, ``productCode``); those are
    mapped onto the canonical field names.
    """
    reader = csv.reader(io.StringIO(content))
    try:
        header = [_field_name(h) for h in next(reader)]
    except StopIteration:
        raise ValueError("Transcription CSV is empty")

    missing = REQUIRED_TRANSCRIPTION_FIELDS - set(header)
    if missing:
        raise ValueError(f"Transcription CSV missing required columns: {', '.join(sorted(missing))}")

    rows = []
    for values in reader:
        if not any(v.strip() for v in values):
            continue
        rows.append({name: values[i] if i < len(values) else "" for i, name in enumerate(header) if name})
    logger.info(f"Parsed transcription CSV: {len(rows)} rows, {len(header)} columns")
    return rows
