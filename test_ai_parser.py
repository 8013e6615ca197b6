# test_ai_parser.py
import io
import json
from decimal import Decimal

import pytest
import requests
from PIL import Image

import ai_parser
from ai_parser import ExtractionError, extract_receipt, parse_model_reply


def png_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), "white").save(buf, format="PNG")
    return buf.getvalue()


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


def reply_with(content, status=200):
    return FakeResponse({"choices": [{"message": {"content": content}}]}, status)


def test_extract_receipt_sends_image_and_cleans_items(monkeypatch):
    sent = {}

    def fake_post(url, headers=None, json=None, timeout=None):
        sent["url"] = url
        sent["payload"] = json
        return reply_with(
            '{"items": [{"item": "Burger", "price": 12.99}, {"item": "Fries", "price": 4.5},'
            ' {"item": "Coupon", "price": -2}, {"item": "", "price": 3}, {"item": "Water", "price": "free"}],'
            ' "subtotalAmountOnBill": 17.49, "taxAmountOnBill": 1.5}'
        )

    monkeypatch.setattr(ai_parser.requests, "post", fake_post)
    result = extract_receipt(png_bytes())

    assert sent["url"] == ai_parser.OPENROUTER_URL
    image_part = sent["payload"]["messages"][0]["content"][1]
    assert image_part["image_url"]["url"].startswith("data:image/png;base64,")
    assert result["items"] == [
        {"item": "Burger", "price": Decimal("12.99")},
        {"item": "Fries", "price": Decimal("4.5")},
    ]
    assert result["subtotalAmountOnBill"] == Decimal("17.49")
    assert result["taxAmountOnBill"] == Decimal("1.5")


def test_missing_bill_figures_come_back_as_none(monkeypatch):
    monkeypatch.setattr(ai_parser, "call_openrouter",
                        lambda image, mime: json.dumps({"items": [{"item": "Tea", "price": 3}]}))
    result = extract_receipt(png_bytes())
    assert result["subtotalAmountOnBill"] is None
    assert result["taxAmountOnBill"] is None


def test_no_usable_items_is_an_extraction_error(monkeypatch):
    monkeypatch.setattr(ai_parser, "call_openrouter", lambda image, mime: '{"items": []}')
    with pytest.raises(ExtractionError, match="No valid items"):
        extract_receipt(png_bytes())


def test_not_an_image_is_rejected_before_calling_the_model(monkeypatch):
    def boom(*args, **kwargs):
        raise AssertionError("model should not be called")

    monkeypatch.setattr(ai_parser, "call_openrouter", boom)
    with pytest.raises(ExtractionError):
        extract_receipt(b"definitely not a picture")


def test_http_failure_propagates(monkeypatch):
    monkeypatch.setattr(ai_parser.requests, "post", lambda *a, **kw: reply_with("", status=500))
    with pytest.raises(requests.HTTPError):
        extract_receipt(png_bytes())


def test_empty_choices_is_an_extraction_error(monkeypatch):
    monkeypatch.setattr(ai_parser.requests, "post", lambda *a, **kw: FakeResponse({"choices": []}))
    with pytest.raises(ExtractionError):
        extract_receipt(png_bytes())


def test_parse_model_reply_finds_json_in_markdown():
    raw = 'Sure! ```json\n{"items": [{"item": "Tea", "price": 3}]}\n```'
    assert parse_model_reply(raw)["items"][0]["item"] == "Tea"


@pytest.mark.parametrize("raw", ["no json here", "[1, 2, 3]", "{broken"])
def test_parse_model_reply_rejects_garbage(raw):
    with pytest.raises(ExtractionError):
        parse_model_reply(raw)


def test_detected_image_type_beats_declared_type(monkeypatch):
    sent = {}

    def fake_call(image, mime):
        sent["mime"] = mime
        return '{"items": [{"item": "Tea", "price": 3}]}'

    monkeypatch.setattr(ai_parser, "call_openrouter", fake_call)
    extract_receipt(png_bytes(), "image/jpeg")
    assert sent["mime"] == "image/png"
