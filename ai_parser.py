# ai_parser.py
import base64
import io
import json
import logging
import os
import re

import requests
from dotenv import load_dotenv
from PIL import Image, UnidentifiedImageError

from utils import to_decimal

load_dotenv()

logger = logging.getLogger(__name__)

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
OPENROUTER_MODEL = os.getenv("OPENROUTER_MODEL", "openai/gpt-4o-mini")
OPENROUTER_TIMEOUT = float(os.getenv("OPENROUTER_TIMEOUT", "60"))

NO_ITEMS_MESSAGE = (
    "No valid items and prices could be extracted. "
    "Please try another image or enter items manually."
)

PROMPT = """
Analyze this image of a receipt or bill.
Extract all individual line items with their names and prices.
Also, identify the subtotal amount (before tax and tip) and the total tax amount as explicitly listed on the bill.

Return ONLY valid JSON with the following properties:
- "items": an array of objects, each with "item" (string) and "price" (number).
- "subtotalAmountOnBill": the numeric value of the subtotal listed on the bill.
- "taxAmountOnBill": the numeric value of the total tax listed on the bill.
If any of these values are not found, use 0 or an empty array as appropriate.

Example:
{"items": [{"item": "Burger", "price": 12.99}, {"item": "Fries", "price": 4.50}],
 "subtotalAmountOnBill": 17.49,
 "taxAmountOnBill": 1.50}
"""


class ExtractionError(Exception):
    """The receipt could not be turned into a usable item list."""


def detect_mime_type(image_bytes: bytes):
    """MIME type of the decoded image, or None when Pillow has no name for its format."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError) as e:
        raise ExtractionError("The uploaded file is not a readable image.") from e
    return Image.MIME.get(fmt)


def call_openrouter(image_bytes: bytes, mime_type: str) -> str:
    headers = {
        "Authorization": f"Bearer {OPENROUTER_API_KEY}",
        "X-Title": "AI Receipt Splitter",
        "Content-Type": "application/json",
    }
    data_uri = f"data:{mime_type};base64," + base64.b64encode(image_bytes).decode("ascii")
    payload = {
        "model": OPENROUTER_MODEL,
        "messages": [{
            "role": "user",
            "content": [
                {"type": "text", "text": PROMPT},
                {"type": "image_url", "image_url": {"url": data_uri}},
            ],
        }],
        "response_format": {"type": "json_object"},
        "temperature": 0.0,
        "max_tokens": 1500,
    }
    resp = requests.post(OPENROUTER_URL, headers=headers, json=payload, timeout=OPENROUTER_TIMEOUT)
    resp.raise_for_status()
    data = resp.json()
    try:
        return data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise ExtractionError("The AI service did not return any content. Please try again.") from e


def parse_model_reply(raw: str) -> dict:
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        m = re.search(r"\{.*\}", raw or "", re.S)
        if not m:
            raise ExtractionError(f"Failed to parse AI response: {raw!r}") from None
        try:
            parsed = json.loads(m.group(0))
        except ValueError as e:
            raise ExtractionError(f"Failed to parse AI response: {e}") from e
    if not isinstance(parsed, dict):
        raise ExtractionError("AI response was not a JSON object.")
    return parsed


def clean_items(raw_items) -> list:
    """Keep only items with a name and a positive numeric price."""
    cleaned = []
    for it in raw_items if isinstance(raw_items, list) else []:
        if not isinstance(it, dict):
            continue
        name = str(it.get("item") or it.get("name") or "").strip()
        price = it.get("price")
        if not name or isinstance(price, bool) or not isinstance(price, (int, float, str)):
            continue
        value = to_decimal(price)
        if value is None or value <= 0:
            logger.debug("Dropping item %r with unusable price %r", name, price)
            continue
        cleaned.append({"item": name, "price": value})
    return cleaned


def normalize_extraction(parsed: dict) -> dict:
    items = clean_items(parsed.get("items"))
    if not items:
        raise ExtractionError(NO_ITEMS_MESSAGE)
    return {
        "items": items,
        "subtotalAmountOnBill": to_decimal(parsed.get("subtotalAmountOnBill")),
        "taxAmountOnBill": to_decimal(parsed.get("taxAmountOnBill")),
    }


def extract_receipt(image_bytes: bytes, mime_type: str = None) -> dict:
    """
    Send a receipt image to the multimodal model and return
    {"items": [{"item", "price"}], "subtotalAmountOnBill", "taxAmountOnBill"}.

    Prices come back as Decimal; subtotal/tax are None when the bill does not
    state them. The type Pillow detects wins over `mime_type`, which is only
    used for formats Pillow cannot name. Raises ExtractionError when nothing
    usable comes back and lets requests.RequestException through for
    transport failures.
    """
    if not image_bytes:
        raise ExtractionError("Please upload an image first.")
    sniffed = detect_mime_type(image_bytes)
    raw = call_openrouter(image_bytes, sniffed or mime_type or "image/jpeg")
    logger.debug("Raw AI response: %s", raw)

    result = normalize_extraction(parse_model_reply(raw))
    logger.info(
        "Extracted %d item(s); subtotal on bill=%s, tax on bill=%s",
        len(result["items"]), result["subtotalAmountOnBill"], result["taxAmountOnBill"],
    )
    return result
