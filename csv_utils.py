import csv
import re
from io import StringIO
from typing import Callable, Sequence

from schemas import Transaction


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def export_transactions(
    transactions: Sequence[Transaction],
    *,
    category_for: Callable[[Transaction], str],
    payee_for: Callable[[Transaction], str],
) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["Date", "Payee", "Amount", "Category", "Memo", "Pending"])
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                sanitize_csv_value(payee_for(txn)),
                f"{txn.amount:.2f}",
                sanitize_csv_value(category_for(txn)),
                sanitize_csv_value(txn.memo),
                "1" if txn.is_pending else "0",
            ]
        )
    return output.getvalue()
