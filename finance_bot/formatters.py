import re

from finance_bot.models.schemas import Transaction

TYPE_LABELS = {
    "income": "Pemasukan",
    "expense": "Pengeluaran",
    "transfer": "Transfer",
    "convert": "Konversi",
}

_MULTIPLIERS = {
    "juta": 1_000_000,
    "jt": 1_000_000,
    "m": 1_000_000,
    "ribu": 1_000,
    "rb": 1_000,
    "k": 1_000,
}

_AMOUNT_RE = re.compile(
    r"(?P<prefix>rp\.?\s*|\$\s*)?"
    r"(?P<number>\d{1,3}(?:[.,]\d{3})+|\d+(?:[.,]\d+)?)"
    r"\s*(?P<suffix>juta|jt|ribu|rb|k|m)?\b",
    re.IGNORECASE,
)


def format_currency(amount: float, currency: str = "IDR") -> str:
    """Format an amount the way users read it: Rp 75.000, $50.00."""
    currency = (currency or "").upper()
    if currency == "IDR":
        grouped = f"{round(amount):,}".replace(",", ".")
        return f"Rp {grouped}"
    if currency == "USD":
        return f"${amount:,.2f}"
    return f"{currency} {amount:,.2f}"


def _to_number(raw: str, has_suffix: bool) -> float:
    # "75.000" and "1,500,000" are thousands groups; "1.5" / "2,5" are decimals.
    if re.fullmatch(r"\d{1,3}(?:[.,]\d{3})+", raw) and not has_suffix:
        return float(re.sub(r"[.,]", "", raw))
    return float(raw.replace(",", "."))


def parse_amount(text: str) -> tuple[float, str | None] | None:
    """Extract the first amount from free text.

    Understands Indonesian shorthand ("75rb", "5 juta", "1.5k") and
    currency prefixes ("Rp 75.000", "$50"). Returns the amount and the
    currency implied by a prefix, if any.
    """
    for match in _AMOUNT_RE.finditer(text):
        suffix = (match.group("suffix") or "").lower()
        prefix = (match.group("prefix") or "").lower()
        value = _to_number(match.group("number"), bool(suffix))
        value *= _MULTIPLIERS.get(suffix, 1)
        if value <= 0:
            continue
        currency = None
        if prefix.startswith("rp"):
            currency = "IDR"
        elif prefix.startswith("$"):
            currency = "USD"
        return value, currency
    return None


def convert_amount(amount: float, from_currency: str, to_currency: str, rate: float) -> float:
    """Convert between IDR and USD with the group's IDR-per-USD rate."""
    if from_currency == to_currency:
        return amount
    if from_currency == "USD" and to_currency == "IDR":
        return amount * rate
    if from_currency == "IDR" and to_currency == "USD":
        return amount / rate
    raise ValueError(f"Unsupported currency pair: {from_currency} to {to_currency}")


def progress_bar(value: float, total: float, length: int = 10) -> str:
    percentage = 0 if total <= 0 else min(value / total, 1)
    filled = round(percentage * length)
    return "█" * filled + "░" * (length - filled)


def format_transaction(txn: Transaction) -> str:
    line = (
        f"`{txn.id}` {TYPE_LABELS.get(txn.type, txn.type)} "
        f"{format_currency(txn.amount, txn.currency)}"
    )
    if txn.type == "convert" and txn.target_currency and txn.target_amount:
        line += f" → {format_currency(txn.target_amount, txn.target_currency)}"
    line += f" — {txn.description}"
    if txn.canceled:
        line += " _(dibatalkan)_"
    elif txn.awaiting_approval:
        line += " _(menunggu persetujuan)_"
    return line


def format_balances(balances: dict[str, float]) -> str:
    if not balances:
        return "Belum ada saldo."
    lines = ["*Saldo dompet:*"]
    for currency, balance in sorted(balances.items()):
        lines.append(f"• {currency}: {format_currency(balance, currency)}")
    return "\n".join(lines)


def format_stats(header: str, stats) -> str:
    lines = [
        header,
        f"• Transaksi: {stats.transactions} (dibatalkan {stats.canceled}, "
        f"menunggu persetujuan {stats.awaiting_approval})",
    ]
    for tx_type, by_currency in sorted(stats.totals.items()):
        amounts = ", ".join(format_currency(a, c) for c, a in sorted(by_currency.items()))
        lines.append(f"• {TYPE_LABELS.get(tx_type, tx_type)}: {amounts}")
    return "\n".join(lines)
