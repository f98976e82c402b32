import csv
import math
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from io import StringIO

REQUIRED_COLUMNS = ("expenseDate", "amount", "currency", "category", "subCategory")
OPTIONAL_COLUMNS = ("reason",)
DATE_FORMATS = ("%m/%d/%Y", "%Y-%m-%d")

TWO_PLACES = Decimal("0.01")


class CSVFormatError(ValueError):
    pass


def parse_date(value: str) -> date:
    value = value.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date '{value}'")


def parse_amount(value: str) -> Decimal:
    """Parse an amount as a float and re-serialize it as a 2-place decimal."""
    clean = value.strip().replace("$", "").replace("€", "").replace(" ", "")
    try:
        number = float(clean)
    except ValueError as exc:
        raise ValueError(f"Invalid amount '{value}'") from exc
    if not math.isfinite(number):
        raise ValueError(f"Invalid amount '{value}'")
    return Decimal(repr(number)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def parse_import_file(content: bytes) -> list[tuple[int, dict[str, str]]]:
    """
    Decode and parse an uploaded expense file into ``(line_number, row)`` pairs.

    The whole file is read before anything is returned; header names and
    values are trimmed. Raises ``CSVFormatError`` when the file is not a
    readable delimited file with the expected header.
    """
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise CSVFormatError("File is not valid UTF-8 text") from exc

    reader = csv.DictReader(StringIO(text), strict=True)
    rows: list[tuple[int, dict[str, str]]] = []
    try:
        if not reader.fieldnames:
            raise CSVFormatError("File is empty")
        headers = [name.strip() for name in reader.fieldnames]
        missing = [col for col in REQUIRED_COLUMNS if col not in headers]
        if missing:
            raise CSVFormatError(f"Missing required columns: {', '.join(missing)}")
        reader.fieldnames = headers

        for raw in reader:
            if None in raw:
                raise CSVFormatError(
                    f"Line {reader.line_num} has more fields than the header"
                )
            row = {key: (value or "").strip() for key, value in raw.items()}
            for column in OPTIONAL_COLUMNS:
                row.setdefault(column, "")
            rows.append((reader.line_num, row))
    except csv.Error as exc:
        raise CSVFormatError(f"Malformed file near line {reader.line_num}: {exc}") from exc
    return rows
