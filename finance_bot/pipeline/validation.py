from finance_bot.models.schemas import TransactionDraft

TRANSACTION_TYPES = ("income", "expense", "transfer", "convert")


def draft_problems(draft: TransactionDraft, supported_currencies: list[str]) -> dict[str, str]:
    """Check a draft against the ledger rules.

    Returns a mapping of field name to a user-facing explanation; empty when
    the draft can be recorded.
    """
    problems: dict[str, str] = {}

    if draft.amount is None:
        problems["amount"] = "jumlah uang belum disebutkan"
    elif draft.amount <= 0:
        problems["amount"] = "jumlah harus lebih dari nol"

    if not draft.type:
        problems["type"] = "jenis transaksi (pemasukan/pengeluaran) belum jelas"
    elif draft.type not in TRANSACTION_TYPES:
        problems["type"] = f"jenis transaksi '{draft.type}' tidak dikenal"

    if not draft.currency:
        problems["currency"] = "mata uang belum disebutkan"
    elif len(draft.currency) != 3 or draft.currency not in supported_currencies:
        problems["currency"] = f"mata uang '{draft.currency}' tidak didukung"

    if draft.type == "convert":
        if not draft.target_currency:
            problems["target_currency"] = "mata uang tujuan konversi belum disebutkan"
        elif draft.target_currency not in supported_currencies:
            problems["target_currency"] = f"mata uang '{draft.target_currency}' tidak didukung"
        elif draft.target_currency == draft.currency:
            problems["target_currency"] = "mata uang asal dan tujuan sama"
        if draft.target_amount is None or draft.target_amount <= 0:
            problems["target_amount"] = "jumlah hasil konversi belum disebutkan"

    return problems


def complete_draft(draft: TransactionDraft, default_currency: str, message: str) -> TransactionDraft:
    """Fill the fields a message may leave implicit."""
    updates = {}
    if not draft.currency:
        updates["currency"] = default_currency
    if not draft.description:
        updates["description"] = message.strip()[:200]
    if draft.type == "convert" and draft.target_amount is None and draft.amount and draft.exchange_rate:
        if draft.currency == "USD":
            updates["target_amount"] = draft.amount * draft.exchange_rate
        elif draft.currency == "IDR":
            updates["target_amount"] = draft.amount / draft.exchange_rate
    return draft.model_copy(update=updates) if updates else draft
