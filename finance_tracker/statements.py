import io
import logging
import re
import unicodedata
import zipfile
from dataclasses import asdict, dataclass
from datetime import date, datetime
from html.parser import HTMLParser

import xlrd
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException


logger = logging.getLogger(__name__)

HEADER_KEYS = (
    "fecha operacion",
    "fecha valor",
    "concepto",
    "importe",
    "saldo",
)
MOVEMENT_FIELDS = ("operation_date", "value_date", "concept", "amount", "balance")
LEGACY_FIELD_ALIASES = {
    "fechaOperacion": "operation_date",
    "fechaValor": "value_date",
    "concepto": "concept",
    "importe": "amount",
    "saldo": "balance",
}
SNIFF_ENCODING = "latin-1"


class UnsupportedStatementError(ValueError):
    """Raised when no adapter can turn an upload into a grid of rows."""


@dataclass(frozen=True)
class Movement:
    operation_date: str
    value_date: str
    concept: str
    amount: str
    balance: str

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        values = dict.fromkeys(MOVEMENT_FIELDS, "")
        for key, value in (data or {}).items():
            field = LEGACY_FIELD_ALIASES.get(key, key)
            if field in values:
                values[field] = normalize_text(value)
        return cls(**values)


def normalize_text(value):
    if value is None:
        return ""
    return " ".join(str(value).split())


def normalize_key(value):
    lowered = normalize_text(value).lower()
    decomposed = unicodedata.normalize("NFD", lowered)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def locate_header(rows):
    """Find the first row naming all five statement columns.

    Returns ``(row_index, positions)`` where ``positions`` follows
    ``HEADER_KEYS`` order, or ``None`` when no row qualifies.
    """
    for index, row in enumerate(rows):
        keys = [normalize_key(cell) for cell in (row or [])]
        positions = []
        for header in HEADER_KEYS:
            if header not in keys:
                break
            positions.append(keys.index(header))
        else:
            logger.debug("Statement header found at row %s: %s", index, positions)
            return index, tuple(positions)
    return None


def extract_movements(rows):
    rows = list(rows or [])
    located = locate_header(rows)
    if located is None:
        logger.debug("No statement header among %s rows", len(rows))
        return []

    header_index, positions = located
    last_position = max(positions)
    movements = []
    for row in rows[header_index + 1:]:
        if not row or len(row) <= last_position:
            continue
        values = [normalize_text(row[pos]) for pos in positions]
        if not any(values):
            continue
        movements.append(Movement(*values))
    return movements


class _TableRowCollector(HTMLParser):
    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.rows = []
        self._table_depth = 0
        self._row = None
        self._cell = None

    def handle_starttag(self, tag, attrs):
        if tag == "table":
            self._table_depth += 1
        elif tag == "tr" and self._table_depth:
            self._finish_row()
            self._row = []
        elif tag in ("td", "th") and self._row is not None:
            self._finish_cell()
            self._cell = []

    def handle_endtag(self, tag):
        if tag in ("td", "th"):
            self._finish_cell()
        elif tag == "tr":
            self._finish_row()
        elif tag == "table" and self._table_depth:
            self._finish_row()
            self._table_depth -= 1

    def handle_data(self, data):
        if self._cell is not None:
            self._cell.append(data)

    def _finish_cell(self):
        if self._cell is not None and self._row is not None:
            self._row.append(normalize_text("".join(self._cell)))
        self._cell = None

    def _finish_row(self):
        self._finish_cell()
        if self._row is not None:
            self.rows.append(self._row)
        self._row = None

    def close(self):
        super().close()
        self._finish_row()


def rows_from_html(text):
    collector = _TableRowCollector()
    collector.feed(text or "")
    collector.close()
    return collector.rows


def extract_movements_from_html(text):
    return extract_movements(rows_from_html(text))


def looks_like_html_table(data):
    if isinstance(data, bytes):
        data = data.decode(SNIFF_ENCODING)
    lowered = (data or "").lower()
    return "<table" in lowered and "<tr" in lowered


def cell_to_text(value):
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, datetime):
        return value.strftime("%d/%m/%Y")
    if isinstance(value, date):
        return value.strftime("%d/%m/%Y")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value).replace(".", ",")
    return str(value)


def rows_from_xlsx(data):
    workbook = load_workbook(io.BytesIO(data), data_only=True, read_only=True)
    try:
        sheet = workbook.worksheets[0]
        return [[cell_to_text(value) for value in row] for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def rows_from_xls(data):
    book = xlrd.open_workbook(file_contents=data)
    sheet = book.sheet_by_index(0)
    rows = []
    for row_idx in range(sheet.nrows):
        row = []
        for cell in sheet.row(row_idx):
            if cell.ctype == xlrd.XL_CELL_DATE:
                row.append(cell_to_text(xlrd.xldate.xldate_as_datetime(cell.value, book.datemode)))
            else:
                row.append(cell_to_text(cell.value))
        rows.append(row)
    return rows


def rows_from_html_bytes(data):
    return rows_from_html(data.decode(SNIFF_ENCODING))


ADAPTER_ERRORS = {
    "xlsx": (zipfile.BadZipFile, InvalidFileException, KeyError, ValueError, OSError),
    "xls": (xlrd.XLRDError, ValueError, IndexError, OSError),
}
SPREADSHEET_ADAPTERS = (("xlsx", rows_from_xlsx), ("xls", rows_from_xls))


def read_statement_rows(data):
    """Turn uploaded bytes into a grid of cell texts.

    Adapters are attempted in turn and the first one that parses wins.
    The HTML sniff only moves the HTML adapter to the front of the queue.
    """
    if not data:
        raise UnsupportedStatementError("The uploaded file is empty.")

    adapters = list(SPREADSHEET_ADAPTERS)
    if looks_like_html_table(data):
        adapters.insert(0, ("html", rows_from_html_bytes))
    else:
        adapters.append(("html", rows_from_html_bytes))

    failures = []
    for name, adapter in adapters:
        try:
            rows = adapter(data)
        except ADAPTER_ERRORS.get(name, ()) as exc:
            failures.append(f"{name}: {exc}")
            continue
        if name == "html" and not rows:
            failures.append("html: no table rows")
            continue
        logger.debug("Statement read with %s adapter (%s rows)", name, len(rows))
        return rows

    raise UnsupportedStatementError("Unrecognized statement format (" + "; ".join(failures) + ")")


def parse_statement(data):
    return extract_movements(read_statement_rows(data))


def movements_to_dicts(movements):
    return [movement.to_dict() for movement in movements]


def movements_from_dicts(items):
    return [Movement.from_dict(item) for item in items]


def describe_source(filename):
    name = re.sub(r"[\\/]+", "/", filename or "").rsplit("/", 1)[-1]
    return normalize_text(name)[:200]
