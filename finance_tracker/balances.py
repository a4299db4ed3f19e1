from collections import namedtuple
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation


# Spanish bank exports: "." groups thousands, "," marks decimals.
SPANISH_DECIMAL_PROFILE = {"thousands": ".", "decimal": ","}
CENT = Decimal("0.01")

Reconciliation = namedtuple("Reconciliation", ["initial_balance", "final_balance", "delta"])


def parse_amount(value, profile=SPANISH_DECIMAL_PROFILE):
    if value is None:
        return None
    text = "".join(str(value).split())
    # Decimal() would accept "1_000" digit grouping
    if not text or "_" in text:
        return None
    text = text.replace(profile["thousands"], "").replace(profile["decimal"], ".")
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount


def _field(movement, name):
    if isinstance(movement, dict):
        return movement.get(name)
    return getattr(movement, name, None)


def reconcile(movements):
    """Opening/closing balance of a newest-first movement list.

    The opening balance is the oldest running balance minus the oldest
    amount. Returns ``None`` when the list is empty or any of the three
    boundary values does not parse.
    """
    if not movements:
        return None
    newest = movements[0]
    oldest = movements[-1]
    final_balance = parse_amount(_field(newest, "balance"))
    oldest_balance = parse_amount(_field(oldest, "balance"))
    oldest_amount = parse_amount(_field(oldest, "amount"))
    if final_balance is None or oldest_balance is None or oldest_amount is None:
        return None
    initial_balance = oldest_balance - oldest_amount
    return Reconciliation(initial_balance, final_balance, final_balance - initial_balance)


def summarize_periods(periods):
    rows = []
    total_delta = Decimal("0")
    for label, movements in periods:
        result = reconcile(movements)
        if result is None:
            continue
        total_delta += result.delta
        rows.append(
            {
                "label": label,
                "initial_balance": result.initial_balance,
                "final_balance": result.final_balance,
                "delta": result.delta,
            }
        )
    return rows, total_delta


def movement_totals(movements):
    income = Decimal("0")
    expenses = Decimal("0")
    for movement in movements:
        amount = parse_amount(_field(movement, "amount"))
        if amount is None:
            continue
        if amount > 0:
            income += amount
        elif amount < 0:
            expenses += -amount
    income = income.quantize(CENT, rounding=ROUND_HALF_UP)
    expenses = expenses.quantize(CENT, rounding=ROUND_HALF_UP)
    return {"income": income, "expenses": expenses, "net": income - expenses}


def format_amount(value):
    if value is None:
        return ""
    quantized = Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    text = f"{quantized:,.2f}"
    return text.replace(",", "\x00").replace(".", ",").replace("\x00", ".")


def format_short_date(value):
    text = str(value or "").strip()
    if not text:
        return ""
    parts = text.split("/") if "/" in text else text.split("-")
    if len(parts) >= 2:
        return f"{parts[0].zfill(2)}/{parts[1].zfill(2)}"
    return text


def amount_sign_class(value):
    amount = parse_amount(value)
    if amount is None:
        return ""
    return "is-negative" if amount < 0 else "is-positive"
