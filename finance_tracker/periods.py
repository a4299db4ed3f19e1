import re
import unicodedata


MONTH_ORDER = (
    "enero",
    "febrero",
    "marzo",
    "abril",
    "mayo",
    "junio",
    "julio",
    "agosto",
    "septiembre",
    "octubre",
    "noviembre",
    "diciembre",
)
UNKNOWN_MONTH_RANK = len(MONTH_ORDER)
FILE_PREFIX = "movimientos-"
FILE_SUFFIX = ".json"
MIN_YEAR = 1900
MAX_YEAR = 9999

_FILE_NAME_RE = re.compile(r"^movimientos-(\d{4})-([a-z0-9-]+)\.json$")


class InvalidPeriodError(ValueError):
    """Raised when a month label or year cannot identify a storage slot."""


def strip_accents(text):
    normalized = unicodedata.normalize("NFD", text or "")
    return "".join(ch for ch in normalized if not unicodedata.combining(ch))


def normalize_period_key(label):
    text = strip_accents(str(label or "").lower())
    text = re.sub(r"\s+", "-", text.strip())
    text = re.sub(r"[^a-z0-9-]", "", text)
    text = re.sub(r"-{2,}", "-", text)
    return text.strip("-")


def validate_year(year):
    if isinstance(year, bool):
        raise InvalidPeriodError("Year must be a four digit number.")
    try:
        value = int(str(year).strip())
    except (TypeError, ValueError):
        raise InvalidPeriodError("Year must be a four digit number.") from None
    if value < MIN_YEAR or value > MAX_YEAR:
        raise InvalidPeriodError("Year must be a four digit number.")
    return value


def validate_period(month, year):
    """Return ``(year, token)`` for an upload, or raise ``InvalidPeriodError``.

    Runs before anything touches storage so a rejected upload never
    leaves a partial record behind.
    """
    if not isinstance(month, str) or not month.strip():
        raise InvalidPeriodError("Month required.")
    token = normalize_period_key(month)
    if not token:
        raise InvalidPeriodError("Month label has no usable characters.")
    return validate_year(year), token


def period_file_name(year, token):
    return f"{FILE_PREFIX}{int(year):04d}-{token}{FILE_SUFFIX}"


def parse_period_file_name(name):
    match = _FILE_NAME_RE.match(name or "")
    if match is None:
        return None
    token = match.group(2)
    if normalize_period_key(token) != token:
        return None
    return int(match.group(1)), token


def month_key(label):
    text = str(label or "").strip()
    if text.startswith(FILE_PREFIX):
        text = text[len(FILE_PREFIX):]
        text = re.sub(r"^\d{4}-", "", text)
    text = re.sub(r"\.[A-Za-z0-9]+$", "", text)
    return text.strip()


def format_period_label(label):
    base = re.sub(r"[_-]+", " ", month_key(label)).strip()
    words = strip_accents(base).split()
    return " ".join(word[:1].upper() + word[1:].lower() for word in words)


def month_rank(label):
    base = strip_accents(month_key(label)).lower()
    segments = re.split(r"[\s_-]", base)
    first = segments[0] if segments else ""
    try:
        return MONTH_ORDER.index(first)
    except ValueError:
        return UNKNOWN_MONTH_RANK


def period_sort_key(label):
    return month_rank(label), str(label)


def sort_periods(labels):
    return sorted(labels, key=period_sort_key)


def statement_sort_key(record):
    return (int(record["year"]),) + period_sort_key(record["month"])
