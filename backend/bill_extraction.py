import base64
import json
import logging
import re
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
BILL_NUMERIC_FIELDS = ("total", "tax", "serviceFee", "tips", "discount")

BILL_PROMPT = (
    "Analyze this bill/receipt image and extract the following information in JSON format:\n"
    "{\n"
    '  "total": <total bill amount as number>,\n'
    '  "items": [{"name": "<item name>", "price": <price as number>}],\n'
    '  "tax": <tax amount as number, or 0 if not present>,\n'
    '  "serviceFee": <service fee/charge as number, or 0 if not present>,\n'
    '  "tips": <tips amount as number, or 0 if not present>,\n'
    '  "discount": <discount amount as number, or 0 if not present>\n'
    "}\n\n"
    "Extract all line items from the bill. If you cannot determine exact values, use 0. "
    "Return ONLY the JSON object, no other text."
)


class BillExtractionError(Exception):
    pass


class VisionServiceError(Exception):
    pass


def extract_json_block(text: str) -> Optional[Dict[str, Any]]:
    """Return the first JSON object found in model output, or None."""
    text = (text or "").strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?", "", text).strip()
        text = re.sub(r"```$", "", text).strip()
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except ValueError:
        pass

    decoder = json.JSONDecoder()
    for match in re.finditer(r"\{", text):
        try:
            data, _ = decoder.raw_decode(text, match.start())
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


def parse_float_or_none(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_bill(data: Dict[str, Any]) -> Dict[str, Any]:
    bill: Dict[str, Any] = {}
    for key in BILL_NUMERIC_FIELDS:
        parsed = parse_float_or_none(data.get(key))
        bill[key] = round(parsed, 2) if parsed is not None else 0

    items: List[Dict[str, Any]] = []
    raw_items = data.get("items")
    if isinstance(raw_items, list):
        for item in raw_items:
            if not isinstance(item, dict):
                continue
            name = str(item.get("name") or "").strip()
            price = parse_float_or_none(item.get("price"))
            if not name or price is None:
                continue
            items.append({"name": name, "price": round(price, 2)})
    bill["items"] = items
    return bill


def build_vision_request(image_data: bytes, model: str, max_tokens: int, mime_type: str = "image/jpeg") -> Dict[str, Any]:
    encoded = base64.b64encode(image_data).decode("utf-8")
    return {
        "model": model,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": BILL_PROMPT},
                    {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
                ],
            }
        ],
        "max_tokens": max_tokens,
    }


def call_vision_model(
    image_data: bytes,
    api_key: str,
    model: str = "gpt-4o",
    max_tokens: int = 1000,
    timeout: float = 60.0,
    mime_type: str = "image/jpeg",
) -> str:
    payload = build_vision_request(image_data, model, max_tokens, mime_type)
    req = urllib.request.Request(
        url=OPENAI_CHAT_URL,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            body = response.read().decode("utf-8")
    except urllib.error.HTTPError as ex:
        message = "Failed to process image"
        try:
            message = json.loads(ex.read().decode("utf-8"))["error"]["message"] or message
        except (ValueError, KeyError, TypeError):
            pass
        raise VisionServiceError(message) from ex
    except urllib.error.URLError as ex:
        raise VisionServiceError(f"Vision service unreachable: {ex.reason}") from ex
    except (OSError, UnicodeDecodeError) as ex:
        raise VisionServiceError(f"Vision service unreachable: {ex}") from ex

    try:
        return json.loads(body)["choices"][0]["message"]["content"] or ""
    except (ValueError, KeyError, IndexError, TypeError) as ex:
        raise VisionServiceError("Vision service returned an unexpected response") from ex


def extract_bill(image_data: bytes, api_key: str, **vision_options: Any) -> Dict[str, Any]:
    content = call_vision_model(image_data, api_key, **vision_options)
    data = extract_json_block(content)
    if data is None:
        raise BillExtractionError("Could not parse bill data from image")
    bill = normalize_bill(data)
    logger.info("Parsed bill: total=%s, %d item(s)", bill["total"], len(bill["items"]))
    return bill
