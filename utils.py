# utils.py
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CENTS = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(x):
    """
    Best-effort conversion of a user or model supplied value to Decimal.
    Returns None when the value cannot be read as a finite number.
    """
    if x is None or isinstance(x, bool):
        return None
    if isinstance(x, Decimal):
        return x if x.is_finite() else None
    if isinstance(x, (int, float)):
        try:
            d = Decimal(str(x))
        except InvalidOperation:
            return None
        return d if d.is_finite() else None

    s = str(x).strip()
    if not s:
        return None
    s = s.replace('−', '-').replace('—', '-').replace('–', '-')
    s = s.replace('$', '').replace('%', '').strip()
    # "1,000" and "1,234.56" use thousands separators; a lone "4,50" is a decimal comma
    if '.' in s or re.fullmatch(r'[-+]?\d{1,3}(,\d{3})+', s):
        s = s.replace(',', '')
    else:
        s = s.replace(',', '.')
    if not re.fullmatch(r'[-+]?(\d+(\.\d*)?|\.\d+)', s):
        return None
    return Decimal(s)


def parse_non_negative_or_default(value, default=ZERO):
    """Tolerant numeric input: anything unparseable or negative becomes `default`."""
    d = to_decimal(value)
    if d is None or d < 0:
        return default
    return d


def round_money(amount) -> Decimal:
    return Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)


def format_money(amount) -> str:
    return str(round_money(amount))


def summary_to_json(summary) -> dict:
    """Render a split_calc.Summary with 2-decimal currency strings."""
    return {
        "subtotal": format_money(summary.subtotal),
        "taxRate": None if summary.tax_rate is None else str(summary.tax_rate),
        "taxAmount": format_money(summary.tax_amount),
        "tipAmount": format_money(summary.tip_amount),
        "grandTotal": format_money(summary.grand_total),
        "people": [
            {
                "id": share.person_id,
                "name": share.name,
                "claimed": list(share.claimed),
                "subtotal": format_money(share.subtotal),
                "proportion": str(share.proportion.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)),
                "taxShare": format_money(share.tax),
                "tipShare": format_money(share.tip),
                "totalOwed": format_money(share.total),
            }
            for share in summary.people
        ],
    }


def format_summary_text(summary, currency="$") -> str:
    """Markdown block used by the Telegram bot."""
    lines = [
        "*Bill Summary:*",
        f"Subtotal: {currency}{format_money(summary.subtotal)}",
        f"Tax: {currency}{format_money(summary.tax_amount)}",
        f"Tip: {currency}{format_money(summary.tip_amount)}",
        f"*Grand total: {currency}{format_money(summary.grand_total)}*",
        "",
        "*Per person:*",
    ]
    for share in summary.people:
        lines.append(
            f"{share.name}: {currency}{format_money(share.total)} "
            f"(items {currency}{format_money(share.subtotal)}, "
            f"tax {currency}{format_money(share.tax)}, "
            f"tip {currency}{format_money(share.tip)})"
        )
    return "\n".join(lines)
