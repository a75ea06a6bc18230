"""
Soil-analysis report import (CSV) into the engine's dataset shape.

Lab exports vary: delimiters may be ``,`` ``;`` tab or ``|``, headers carry
accents, superscripts and units, and numbers use decimal commas. Headers
are normalized to plain snake_case keys so formulas can reference them as
``#column#`` placeholders.
"""
import csv
import logging
import re
import unicodedata
from pathlib import Path
from typing import List, Union

from soildose.services.recommendation_engine import DatasetData, InvalidDatasetError
from soildose.services.recommendation_rules import INVALID_DATASET_MESSAGE

logger = logging.getLogger(__name__)

DELIMITER_CANDIDATES = (",", ";", "\t", "|")
DEFAULT_DELIMITER = ";"
DELIMITER_SAMPLE_LINES = 10

SUPERSCRIPT_DIGITS = str.maketrans({"¹": "1", "²": "2", "³": "3"})
DASH_VARIANTS = str.maketrans({"\u2013": "-", "\u2014": "-", "\u2212": "-"})
HEADER_DISALLOWED_RE = re.compile(r"[^a-zA-Z0-9_\- ]")
DECIMAL_COMMA_CELL_RE = re.compile(r"^-?\d+,\d+$")


def normalize_header(header: str) -> str:
    """
    Normalize a column header:
    - strip accents
    - superscript digits to plain digits, dash variants to ``-``
    - drop other punctuation
    - spaces to ``_`` and lower case
    """
    text = unicodedata.normalize("NFD", str(header or ""))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.translate(SUPERSCRIPT_DIGITS).translate(DASH_VARIANTS)
    text = HEADER_DISALLOWED_RE.sub("", text)
    return "_".join(text.split()).lower()


def detect_delimiter(text: str) -> str:
    """Most frequent candidate delimiter in the first lines of ``text``."""
    sample = "\n".join(text.splitlines()[:DELIMITER_SAMPLE_LINES])
    best, best_count = DEFAULT_DELIMITER, 0
    for candidate in DELIMITER_CANDIDATES:
        count = sample.count(candidate)
        if count > best_count:
            best, best_count = candidate, count
    return best


def normalize_cell(cell: str) -> str:
    """Trim a cell and turn ``-12,5`` into ``-12.5``; text cells are kept."""
    value = cell.strip()
    if DECIMAL_COMMA_CELL_RE.match(value):
        return value.replace(",", ".")
    return value


def parse_dataset_csv(text: str, delimiter: str = None) -> DatasetData:
    """
    Parse CSV text into ``DatasetData``.

    Raises:
        InvalidDatasetError: the text has no header line.
    """
    lines = [line for line in (text or "").lstrip("\ufeff").splitlines() if line.strip()]
    if not lines:
        raise InvalidDatasetError(INVALID_DATASET_MESSAGE)

    delimiter = delimiter or detect_delimiter("\n".join(lines))
    records = list(csv.reader(lines, delimiter=delimiter))
    headers = [normalize_header(h) for h in records[0]]
    rows: List[List[str]] = [[normalize_cell(c) for c in record] for record in records[1:]]

    logger.info(f"[Dataset] Parsed {len(rows)} row(s) x {len(headers)} column(s), delimiter={delimiter!r}")
    return DatasetData(headers=headers, rows=rows)


def read_dataset_file(path: Union[str, Path], delimiter: str = None) -> DatasetData:
    """Read a CSV report from disk."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Arquivo não encontrado: {path}")
    return parse_dataset_csv(path.read_text(encoding="utf-8-sig"), delimiter)
