"""
Static market reference data.

Screener market ids, the exchange to price-history ticker suffix table, and
the name patterns used to drop non-equity instruments.
"""

import re
from typing import Dict, Optional

# Screener market id -> default country for rows that omit it
MARKET_COUNTRIES: Dict[str, str] = {
    "america": "United States",
    "europe": "Europe",
    "uk": "United Kingdom",
    "canada": "Canada",
    "australia": "Australia",
    "germany": "Germany",
    "hongkong": "Hong Kong",
    "japan": "Japan",
    "india": "India",
    "brazil": "Brazil",
    "korea": "South Korea",
    "taiwan": "Taiwan",
    "singapore": "Singapore",
    "mexico": "Mexico",
    "israel": "Israel",
    "indonesia": "Indonesia",
}

# Exchange code -> price-history ticker suffix. US venues need none.
EXCHANGE_SUFFIXES: Dict[str, str] = {
    # United States
    "NYSE": "",
    "NASDAQ": "",
    "AMEX": "",
    "ARCA": "",
    "NYSE ARCA": "",
    "BATS": "",
    # Europe
    "LSE": ".L",
    "LSIN": ".L",
    "AIM": ".L",
    "XETR": ".DE",
    "XETRA": ".DE",
    "FWB": ".F",
    "EPA": ".PA",
    "EURONEXT": ".PA",
    "BME": ".MC",
    "MIL": ".MI",
    "STO": ".ST",
    "NGM": ".ST",
    "OSL": ".OL",
    "OSE": ".OL",
    "CSE": ".CO",
    "OMXCOP": ".CO",
    "HEL": ".HE",
    "OMXHEX": ".HE",
    "SIX": ".SW",
    "SWX": ".SW",
    "AMS": ".AS",
    "ENXTAM": ".AS",
    "BRU": ".BR",
    "ENXTBR": ".BR",
    "WSE": ".WA",
    "GPW": ".WA",
    "VIE": ".VI",
    "WBAG": ".VI",
    "ENXTLS": ".LS",
    "ELI": ".LS",
    "ATHEX": ".AT",
    "ASE": ".AT",
    "BIST": ".IS",
    "TASE": ".TA",
    # Asia-Pacific
    "HKEX": ".HK",
    "HKSE": ".HK",
    "TSE": ".T",
    "JPX": ".T",
    "NSE": ".NS",
    "BSE": ".BO",
    "KRX": ".KS",
    "KOSE": ".KS",
    "KOSDAQ": ".KQ",
    "TWSE": ".TW",
    "TPEX": ".TWO",
    "SGX": ".SI",
    "ASX": ".AX",
    "NZX": ".NZ",
    "NZE": ".NZ",
    "IDX": ".JK",
    "MYX": ".KL",
    "KLSE": ".KL",
    "SET": ".BK",
    "SSE": ".SS",
    "SHH": ".SS",
    "SZSE": ".SZ",
    "SHZ": ".SZ",
    # Americas
    "TSX": ".TO",
    "TSXV": ".V",
    "BMFBOVESPA": ".SA",
    "BVMF": ".SA",
    "BMV": ".MX",
    # Africa / Middle East
    "JSE": ".JO",
    "TADAWUL": ".SR",
    "SAU": ".SR",
}

OTC_EXCHANGES = frozenset({"OTC", "OTCM"})

# Venue status suffixes: halted, preferred, units, warrants, rights
STATUS_SUFFIX_PATTERN = re.compile(r"\.(H|P|U|WT|RT)$", re.IGNORECASE)

# Non-equity instruments, matched against the instrument name
EXCLUDED_INSTRUMENT_PATTERN = re.compile(
    r"\b(ETF|ETN|ETP|FUND|TRUST UNITS?|INDEX|WARRANTS?|RIGHTS?|"
    r"ADR|GDR|DEPOSITARY|DEPOSITORY)\b",
    re.IGNORECASE,
)

# Leveraged and inverse products, matched against the instrument name
LEVERAGED_PATTERN = re.compile(
    r"\b([1-5](\.\d)?X|ULTRAPRO|ULTRASHORT|LEVERAGED|INVERSE|DAILY (BULL|BEAR))\b",
    re.IGNORECASE,
)


def history_suffix(exchange: Optional[str]) -> str:
    """Price-history ticker suffix for an exchange code; unknown codes get none."""
    if not exchange:
        return ""
    return EXCHANGE_SUFFIXES.get(exchange.upper(), "")


def normalize_ticker(ticker: str, exchange: Optional[str]) -> str:
    """Strip venue status suffixes and append the history suffix for ``exchange``."""
    clean = STATUS_SUFFIX_PATTERN.sub("", ticker.strip())
    return f"{clean}{history_suffix(exchange)}"


def is_excluded_instrument(name: Optional[str]) -> bool:
    """True for ETFs, funds, warrants, rights and depositary receipts."""
    return bool(name) and EXCLUDED_INSTRUMENT_PATTERN.search(name) is not None


def is_leveraged_product(name: Optional[str]) -> bool:
    return bool(name) and LEVERAGED_PATTERN.search(name) is not None
