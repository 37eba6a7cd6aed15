"""Email classification and code/amount extraction heuristics."""

import pytest

from cardrelay.common.state_machine import EmailType
from cardrelay.services.email_watcher.extraction import (
    ExtractedCode,
    classify_email,
    extract_amounts,
    extract_codes,
    html_to_text,
    is_valid_code,
    pair_codes_with_amounts,
)


@pytest.mark.parametrize(
    "subject, body, expected",
    [
        ("Order Confirmation #12345", "Your gift card code will arrive soon", EmailType.PURCHASE_CONFIRMATION),
        ("We got it: order received", "", EmailType.PURCHASE_CONFIRMATION),
        ("Your Digital Gift Card", "Use this code at checkout", EmailType.GIFT_CARD_DELIVERY),
        ("Thanks!", "Your gift card is here. Redeem it now.", EmailType.GIFT_CARD_DELIVERY),
        ("Gift card sale", "Save 10% this week only", EmailType.OTHER),
        ("Weekly deals", "Nothing to see", EmailType.OTHER),
    ],
)
def test_classify_email(subject, body, expected):
    assert classify_email(subject, body) == expected


def test_labeled_code_with_separators():
    text = "Redemption Code: ABCD-1234-EFGH-5678 Value: $50.00"

    assert extract_codes(text) == ["ABCD1234EFGH5678"]


def test_labeled_code_with_spaces_and_trailing_words():
    text = "Card Number: WXYZ 9876 ABCD 5432 PIN: 1234"

    assert extract_codes(text) == ["WXYZ9876ABCD5432"]


def test_code_without_digits_is_rejected():
    assert extract_codes("Gift Card Code: ABCDEFGHIJKLMNOP") == []


def test_unlabeled_grouped_code_is_found_when_no_label_present():
    assert extract_codes("Your card: WXYZ 9876 ABCD 5432 enjoy!") == ["WXYZ9876ABCD5432"]


def test_multiple_codes_keep_order_and_dedupe():
    text = (
        "Gift Card Code: AAAA1111BBBB2222\n"
        "Gift Card Code: CCCC3333DDDD4444\n"
        "Code: AAAA1111BBBB2222"
    )

    assert extract_codes(text) == ["AAAA1111BBBB2222", "CCCC3333DDDD4444"]


def test_length_window_follows_settings():
    text = "Gift Card Code: AB12CD34EF56"

    assert extract_codes(text) == []
    assert extract_codes(text, min_length=12, max_length=20) == ["AB12CD34EF56"]
    assert extract_codes("Your card: AB12-CD34-EF56", min_length=12) == ["AB12CD34EF56"]


def test_grouped_code_longer_than_window_is_rejected():
    assert extract_codes("Redemption Code: ABCD1234EFGH5678", min_length=12, max_length=14) == []


@pytest.mark.parametrize(
    "code, valid",
    [
        ("ABCD1234EFGH5678", True),
        ("ABCD1234EFGH5678WXYZ", True),
        ("ABCD1234EFGH567", False),
        ("ABCD1234EFGH5678WXYZ1", False),
        ("abcd1234efgh5678", False),
        ("ABCDEFGHIJKLMNOP", False),
    ],
)
def test_is_valid_code(code, valid):
    assert is_valid_code(code) is valid


def test_extract_amounts_keeps_plausible_range():
    text = "Card $100.00, fee $5, shipping $0.99, bulk $1,000.00, other $25.50"

    assert extract_amounts(text) == [10_000, 2_550]


def test_single_distinct_amount_applies_to_every_code():
    paired = pair_codes_with_amounts(["A", "B"], [10_000, 10_000], default_cents=2_500)

    assert paired == [ExtractedCode("A", 10_000), ExtractedCode("B", 10_000)]


def test_multiple_amounts_pair_by_position_then_default():
    paired = pair_codes_with_amounts(["A", "B", "C"], [5_000, 2_500], default_cents=10_000)

    assert [p.value_cents for p in paired] == [5_000, 2_500, 10_000]


def test_no_amount_uses_default():
    assert pair_codes_with_amounts(["A"], [], default_cents=10_000) == [ExtractedCode("A", 10_000)]


def test_html_to_text_strips_markup():
    html = "<html><style>p{color:red}</style><body><p>Gift&nbsp;Card <b>Code</b>:</p> ABCD1234EFGH5678</body></html>"

    text = html_to_text(html)

    assert "<" not in text
    assert "color" not in text
    assert extract_codes(text) == ["ABCD1234EFGH5678"]
