from datetime import datetime

from .periods import statement_sort_key
from .statements import movements_from_dicts, movements_to_dicts


SUMMARY_COLUMNS = "year, month, label, source_name, movement_count, created_at, updated_at"


def _utc_now_text():
    return datetime.utcnow().isoformat(timespec="seconds") + "Z"


def payload_associated_data(year, month):
    return f"{int(year)}:{month}"


def _summary(row):
    return {
        "year": int(row["year"]),
        "month": row["month"],
        "label": row["label"],
        "source_name": row["source_name"],
        "movement_count": int(row["movement_count"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def save_statement(db, cipher, year, month, movements, label="", source_name=""):
    """Insert or overwrite the statement stored for ``(year, month)``."""
    payload = cipher.encrypt_json(movements_to_dicts(movements), payload_associated_data(year, month))
    now = _utc_now_text()
    db.execute(
        """
        INSERT INTO statements (year, month, label, source_name, movement_count, payload, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (year, month) DO UPDATE SET
            label = excluded.label,
            source_name = excluded.source_name,
            movement_count = excluded.movement_count,
            payload = excluded.payload,
            updated_at = excluded.updated_at
        """,
        (int(year), month, label, source_name, len(movements), payload, now, now),
    )
    db.commit()
    return get_statement_summary(db, year, month)


def get_statement_summary(db, year, month):
    row = db.execute(
        f"SELECT {SUMMARY_COLUMNS} FROM statements WHERE year = ? AND month = ?",
        (int(year), month),
    ).fetchone()
    return _summary(row) if row is not None else None


def load_statement(db, cipher, year, month):
    row = db.execute(
        "SELECT payload FROM statements WHERE year = ? AND month = ?",
        (int(year), month),
    ).fetchone()
    if row is None:
        return None
    return movements_from_dicts(cipher.decrypt_json(row["payload"], payload_associated_data(year, month)))


def delete_statement(db, year, month):
    result = db.execute("DELETE FROM statements WHERE year = ? AND month = ?", (int(year), month))
    db.commit()
    return result.rowcount > 0


def list_statements(db, year=None):
    if year is None:
        rows = db.execute(f"SELECT {SUMMARY_COLUMNS} FROM statements").fetchall()
    else:
        rows = db.execute(f"SELECT {SUMMARY_COLUMNS} FROM statements WHERE year = ?", (int(year),)).fetchall()
    return sorted((_summary(row) for row in rows), key=statement_sort_key)


def list_years(db):
    rows = db.execute("SELECT DISTINCT year FROM statements ORDER BY year DESC").fetchall()
    return [int(row[0]) for row in rows]
