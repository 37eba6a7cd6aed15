"""Pure classification and extraction helpers for inbound retailer emails."""

import re
from dataclasses import dataclass
from functools import lru_cache

from cardrelay.common.state_machine import EmailType

PURCHASE_SUBJECT_PHRASES = ("order confirmation", "purchase confirmation", "order received")
DELIVERY_BODY_WORDS = ("code", "pin", "redeem")

_TAG_RE = re.compile(r"<[^>]+>")
_STYLE_RE = re.compile(r"(?is)<(script|style)\b.*?</\1>")
_WS_RE = re.compile(r"\s+")
_SEPARATOR_RE = re.compile(r"[-\s]")

_CODE_LABELS = (r"(?i:gift\s*card\s*code)", r"(?i:redemption\s*code)", r"(?i:card\s*number)")
_AMOUNT_RE = re.compile(r"\$\s?(\d{1,3}(?:,\d{3})+|\d+)(?:\.(\d{2}))?")
_VALID_CODE_RE = re.compile(r"^(?=.*\d)[A-Z0-9]+$")


@dataclass(frozen=True)
class ExtractedCode:
    """Candidate code with its paired face value."""

    code: str
    value_cents: int


def html_to_text(body: str) -> str:
    """Flatten HTML markup into whitespace-normalized text."""

    text = _STYLE_RE.sub(" ", body)
    text = _TAG_RE.sub(" ", text)
    text = text.replace("&nbsp;", " ").replace("&amp;", "&")
    return _WS_RE.sub(" ", text).strip()


def classify_email(subject: str, body: str, keywords: list[str] | tuple[str, ...] = ("gift card",)) -> EmailType:
    lower_subject = subject.lower()
    lower_body = body.lower()

    if any(phrase in lower_subject for phrase in PURCHASE_SUBJECT_PHRASES):
        return EmailType.PURCHASE_CONFIRMATION

    mentions_card = any(k.lower() in lower_subject or k.lower() in lower_body for k in keywords)
    if mentions_card and any(word in lower_body for word in DELIVERY_BODY_WORDS):
        return EmailType.GIFT_CARD_DELIVERY

    return EmailType.OTHER


def normalize_code(raw: str) -> str:
    return _SEPARATOR_RE.sub("", raw).upper()


def is_valid_code(code: str, min_length: int = 16, max_length: int = 20) -> bool:
    """A code is `[A-Z0-9]`, within the length window, and has a digit."""

    return min_length <= len(code) <= max_length and bool(_VALID_CODE_RE.match(code))


@lru_cache(maxsize=8)
def _code_patterns(min_length: int, max_length: int) -> tuple[list[re.Pattern], re.Pattern]:
    """Labeled patterns and the unlabeled fallback for one length window.

    A code is one contiguous run or 4-character blocks split by dashes/spaces.
    """

    run = rf"[A-Za-z0-9]{{{min_length},{max_length}}}"
    fewest = max(1, -(-min_length // 4))
    most = max(fewest, max_length // 4)
    grouped = rf"(?:[A-Za-z0-9]{{4}}[- ]){{{fewest - 1},{most - 1}}}[A-Za-z0-9]{{4}}"
    body = rf"({run}|{grouped})\b"

    labeled = [re.compile(label + r"\s*:\s*" + body) for label in _CODE_LABELS]
    labeled.append(re.compile(rf"(?i:\bcode)\s*:\s*({run})\b"))
    # Used only when no labeled code is present.
    fallback = re.compile(rf"\b([A-Za-z0-9]{{4}}(?:[- ]?[A-Za-z0-9]{{4}}){{{fewest - 1},{most - 1}}})\b")
    return labeled, fallback


def extract_codes(text: str, min_length: int = 16, max_length: int = 20) -> list[str]:
    """Return distinct valid codes in order of appearance."""

    found: list[str] = []

    def collect(patterns) -> None:
        for pattern in patterns:
            for match in pattern.finditer(text):
                code = normalize_code(match.group(1))
                if is_valid_code(code, min_length, max_length) and code not in found:
                    found.append(code)

    labeled, fallback = _code_patterns(min_length, max_length)
    collect(labeled)
    if not found:
        collect([fallback])
    return found


def extract_amounts(text: str, min_cents: int = 1_000, max_cents: int = 50_000) -> list[int]:
    """Dollar amounts in plausible gift card range, as cents, in text order."""

    amounts = []
    for match in _AMOUNT_RE.finditer(text):
        dollars = int(match.group(1).replace(",", ""))
        cents = dollars * 100 + int(match.group(2) or 0)
        if min_cents <= cents <= max_cents:
            amounts.append(cents)
    return amounts


def pair_codes_with_amounts(codes: list[str], amounts: list[int], default_cents: int) -> list[ExtractedCode]:
    """Attach a face value to each code.

    One distinct amount applies to every code; several amounts pair by
    position; codes beyond the amounts (or with none found) get the default.
    """

    distinct = list(dict.fromkeys(amounts))
    if len(distinct) == 1:
        return [ExtractedCode(code, distinct[0]) for code in codes]
    return [
        ExtractedCode(code, amounts[index] if index < len(amounts) else default_cents)
        for index, code in enumerate(codes)
    ]
