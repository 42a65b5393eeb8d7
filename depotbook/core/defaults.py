from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.orm import Session

from depotbook.db.models import Currency, Market, Vendor

# Subset of ISO 4217; the full table is maintained outside this package.
CURRENCIES: list[tuple[str, str, Optional[int]]] = [
    ("AUD", "Australian dollar", 2),
    ("BRL", "Brazilian real", 2),
    ("CAD", "Canadian dollar", 2),
    ("CHF", "Swiss franc", 2),
    ("CNY", "Renminbi", 2),
    ("CZK", "Czech koruna", 2),
    ("DKK", "Danish krone", 2),
    ("EUR", "Euro", 2),
    ("GBP", "Pound sterling", 2),
    ("HKD", "Hong Kong dollar", 2),
    ("HUF", "Hungarian forint", 2),
    ("INR", "Indian rupee", 2),
    ("JPY", "Japanese yen", 0),
    ("KRW", "South Korean won", 0),
    ("MXN", "Mexican peso", 2),
    ("NOK", "Norwegian krone", 2),
    ("NZD", "New Zealand dollar", 2),
    ("PLN", "Polish zloty", 2),
    ("SEK", "Swedish krona", 2),
    ("SGD", "Singapore dollar", 2),
    ("TRY", "Turkish lira", 2),
    ("USD", "United States dollar", 2),
    ("XAG", "Silver (one troy ounce)", None),
    ("XAU", "Gold (one troy ounce)", None),
    ("ZAR", "South African rand", 2),
]

MARKETS: list[tuple[str, str, str]] = [
    ("XSTU", "BOERSE STUTTGART", "DE"),
    ("XDUS", "BOERSE DUESSELDORF", "DE"),
    ("XFRA", "DEUTSCHE BOERSE AG", "DE"),
    ("XBER", "BOERSE BERLIN", "DE"),
    ("XHAN", "NIEDERSAECHSISCHE BOERSE ZU HANNOVER", "DE"),
    ("XETR", "XETRA", "DE"),
    ("XHAM", "HANSEATISCHE WERTPAPIERBOERSE HAMBURG", "DE"),
    ("XMUN", "BOERSE MUENCHEN", "DE"),
    ("XNAS", "Nasdaq All Markets", "US"),
    ("XNMS", "Nasdaq NMS Global Market", "US"),
    ("XNYS", "New York Stock Exchange", "US"),
]


def ensure_reference_data(session: Session, *, vendors: tuple[str, ...] = ("IEX",)) -> dict[str, Any]:
    """Insert missing currencies, markets and vendors. Safe to call repeatedly."""
    created: dict[str, Any] = {"currencies": [], "markets": [], "vendors": []}

    have_ccy = {c for (c,) in session.query(Currency.ccy).all()}
    for ccy, name, digits in CURRENCIES:
        if ccy not in have_ccy:
            session.add(Currency(ccy=ccy, name=name, digits=digits))
            created["currencies"].append(ccy)

    have_mic = {m for (m,) in session.query(Market.mic).all()}
    for mic, name, country in MARKETS:
        if mic not in have_mic:
            session.add(Market(mic=mic, name=name, countrycode=country))
            created["markets"].append(mic)

    have_vendor = {v for (v,) in session.query(Vendor.name).all()}
    for name in vendors:
        if name not in have_vendor:
            session.add(Vendor(name=name))
            created["vendors"].append(name)

    session.flush()
    return created
